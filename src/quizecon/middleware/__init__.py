"""Middleware and exception handler registration."""

from fastapi import FastAPI

from quizecon.config import Settings
from quizecon.middleware.cors import setup_cors
from quizecon.middleware.error_handler import setup_error_handlers
from quizecon.middleware.logging import setup_logging
from quizecon.middleware.request_id import RequestIdMiddleware

__all__ = ["setup_middleware"]


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Logging first, then handlers, then middleware innermost to outermost.

    Starlette runs the last-added middleware outermost, so CORS wraps error
    responses and the request id is bound before any handler logs.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)

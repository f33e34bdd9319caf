"""Sabotage targeting tests: one pending sabotage per victim."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from quizecon.economy.errors import (
    AlreadyConsumed,
    AlreadyTargeted,
    TargetUnavailable,
    UnknownPowerUp,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestActivateSabotage:
    """Aiming a purchased sabotage at another player."""

    @pytest.mark.asyncio
    async def test_aims_at_target(self, economy, make_user):
        """Activation records the target and blocks further targeting."""
        attacker = await make_user("att", tokens=10)
        victim = await make_user("vic")
        sabotage = await economy.purchase_power_up(attacker.id, "102", now=NOW)

        aimed = await economy.activate_sabotage(attacker.id, victim.id, sabotage.id, now=NOW)
        assert aimed.target_user_id == victim.id
        assert aimed.consumed is False
        assert aimed.resolution is None

    @pytest.mark.asyncio
    async def test_second_sabotage_on_same_target_rejected(self, economy, make_user):
        """A victim carries at most one pending sabotage."""
        first = await make_user("first", tokens=10)
        second = await make_user("second", tokens=10)
        victim = await make_user("popular")
        s1 = await economy.purchase_power_up(first.id, "102", now=NOW)
        s2 = await economy.purchase_power_up(second.id, "102", now=NOW)

        await economy.activate_sabotage(first.id, victim.id, s1.id, now=NOW)
        with pytest.raises(AlreadyTargeted):
            await economy.activate_sabotage(second.id, victim.id, s2.id, now=NOW)

        # The rejected sabotage stays unused and can go elsewhere.
        other = await make_user("other")
        aimed = await economy.activate_sabotage(second.id, other.id, s2.id, now=NOW)
        assert aimed.target_user_id == other.id

    @pytest.mark.asyncio
    async def test_cannot_target_self(self, economy, make_user):
        """Self-sabotage is refused."""
        attacker = await make_user("selfish", tokens=10)
        sabotage = await economy.purchase_power_up(attacker.id, "102", now=NOW)
        with pytest.raises(TargetUnavailable):
            await economy.activate_sabotage(attacker.id, attacker.id, sabotage.id, now=NOW)

    @pytest.mark.asyncio
    async def test_missing_target(self, economy, make_user):
        """A target that does not exist is unavailable."""
        attacker = await make_user("lost", tokens=10)
        sabotage = await economy.purchase_power_up(attacker.id, "102", now=NOW)
        with pytest.raises(TargetUnavailable):
            await economy.activate_sabotage(attacker.id, 99999, sabotage.id, now=NOW)

    @pytest.mark.asyncio
    async def test_instance_reused_rejected(self, economy, make_user):
        """An aimed instance cannot be aimed again."""
        attacker = await make_user("reuser", tokens=10)
        v1 = await make_user("v1")
        v2 = await make_user("v2")
        sabotage = await economy.purchase_power_up(attacker.id, "102", now=NOW)
        await economy.activate_sabotage(attacker.id, v1.id, sabotage.id, now=NOW)
        with pytest.raises(AlreadyConsumed):
            await economy.activate_sabotage(attacker.id, v2.id, sabotage.id, now=NOW)

    @pytest.mark.asyncio
    async def test_resolved_sabotage_cannot_be_reaimed(self, economy, make_user):
        """A resolved sabotage stays spent."""
        attacker = await make_user("spent", tokens=10)
        victim = await make_user("hit")
        other = await make_user("next")
        sabotage = await economy.purchase_power_up(attacker.id, "102", now=NOW)
        await economy.activate_sabotage(attacker.id, victim.id, sabotage.id, now=NOW)
        await economy.submit_quiz_attempt(victim.id, "topic-1", 8, "att-1", now=NOW)

        with pytest.raises(AlreadyConsumed):
            await economy.activate_sabotage(attacker.id, other.id, sabotage.id, now=NOW)

    @pytest.mark.asyncio
    async def test_someone_elses_instance(self, economy, make_user):
        """Only the owner can fire an instance."""
        owner = await make_user("owner", tokens=10)
        thief = await make_user("thief")
        victim = await make_user("bystander")
        sabotage = await economy.purchase_power_up(owner.id, "102", now=NOW)
        with pytest.raises(UnknownPowerUp):
            await economy.activate_sabotage(thief.id, victim.id, sabotage.id, now=NOW)

    @pytest.mark.asyncio
    async def test_non_sabotage_instance(self, economy, make_user):
        """Only Sabotage instances can be aimed."""
        attacker = await make_user("mixup", tokens=10)
        victim = await make_user("safe")
        shield = await economy.purchase_power_up(attacker.id, "103", now=NOW)
        with pytest.raises(UnknownPowerUp):
            await economy.activate_sabotage(attacker.id, victim.id, shield.id, now=NOW)


class TestTargetableUsers:
    """The opponent picker only lists players without a pending sabotage."""

    @pytest.mark.asyncio
    async def test_excludes_self_and_targeted(self, economy, make_user):
        """The picker lists only free opponents."""
        attacker = await make_user("picker", tokens=10)
        free = await make_user("free")
        taken = await make_user("taken")
        sabotage = await economy.purchase_power_up(attacker.id, "102", now=NOW)
        await economy.activate_sabotage(attacker.id, taken.id, sabotage.id, now=NOW)

        users = await economy.list_targetable_users(attacker.id)
        assert [u.id for u in users] == [free.id]
        assert await economy.is_targetable(taken.id) is False
        assert await economy.is_targetable(free.id) is True

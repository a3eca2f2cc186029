"""
Tests for the Lifecycle Sweeper
===============================

Expiry and grace passes, failure isolation and idempotence.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from lease_plane.models import Account, Currency, InstanceStatus


async def buy(orchestrator, account_id="acct-1", plan_id=1, name="survival"):
    result = await orchestrator.purchase(account_id, plan_id, Currency.COIN, name)
    return result["instance_id"]


class TestLifecycleScenario:

    @pytest.mark.asyncio
    async def test_purchase_suspend_reclaim(self, orchestrator, sweeper, seeded_store, panel, clock):
        instance_id = await buy(orchestrator)
        assert (await seeded_store.get_account("acct-1")).coin_balance == Decimal("0")

        suspended_at = clock.advance(days=30, minutes=1)
        report = await sweeper.tick()
        assert report.suspended == 1

        instance = await seeded_store.get_instance(instance_id)
        assert instance.status == InstanceStatus.SUSPENDED
        assert instance.suspended_at == suspended_at
        assert instance.grace_expires_at == suspended_at + timedelta(hours=12)
        assert panel.suspended == [instance.external_id]

        clock.advance(hours=11)
        report = await sweeper.tick()
        assert report.reclaimed == 0
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.SUSPENDED

        clock.advance(hours=1)
        report = await sweeper.tick()
        assert report.reclaimed == 1

        instance = await seeded_store.get_instance(instance_id)
        assert instance.status == InstanceStatus.DELETED
        assert panel.deleted == [instance.external_id]


class TestExpiryPass:

    @pytest.mark.asyncio
    async def test_auto_renews_when_funded(self, orchestrator, sweeper, seeded_store, clock):
        await seeded_store.save_account(Account(id="acct-1", coin_balance=Decimal("250"), panel_user_id=7))
        instance_id = await buy(orchestrator)

        now = clock.advance(days=30, hours=2)
        report = await sweeper.tick()

        assert report.renewed == 1
        instance = await seeded_store.get_instance(instance_id)
        assert instance.status == InstanceStatus.ACTIVE
        assert instance.expires_at == now + timedelta(days=30)
        assert (await seeded_store.get_account("acct-1")).coin_balance == Decimal("50")

        reasons = [e.reason for e in await seeded_store.list_entries("acct-1")]
        assert reasons[0] == "auto_renewal"

    @pytest.mark.asyncio
    async def test_not_yet_expired_is_untouched(self, orchestrator, sweeper, seeded_store, clock):
        instance_id = await buy(orchestrator)
        clock.advance(days=29)
        report = await sweeper.tick()
        assert report.to_dict() == {"renewed": 0, "suspended": 0, "reclaimed": 0, "failed": 0}
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_lifetime_instances_are_never_swept(self, orchestrator, sweeper, seeded_store, clock):
        await seeded_store.save_account(Account(id="rich", coin_balance=Decimal("500"), panel_user_id=9))
        instance_id = await buy(orchestrator, account_id="rich", plan_id=5)
        clock.advance(days=3650)
        await sweeper.tick()
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_suspend_failure_leaves_instance_active(self, orchestrator, sweeper, seeded_store, panel, clock):
        instance_id = await buy(orchestrator)
        clock.advance(days=31)
        panel.fail_suspend = True

        report = await sweeper.tick()
        assert report.failed == 1
        instance = await seeded_store.get_instance(instance_id)
        assert instance.status == InstanceStatus.ACTIVE
        assert instance.suspended_at is None

        panel.fail_suspend = False
        report = await sweeper.tick()
        assert report.suspended == 1
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_one_bad_instance_does_not_stop_the_batch(
        self, orchestrator, sweeper, seeded_store, panel, clock
    ):
        first = await buy(orchestrator, account_id="acct-1")
        second = await buy(orchestrator, account_id="acct-2")
        bad_external = (await seeded_store.get_instance(first)).external_id
        clock.advance(days=31)

        async def suspend(external_id):
            if external_id == bad_external:
                raise RuntimeError("unexpected payload")
            panel.suspended.append(external_id)

        panel.suspend_instance = AsyncMock(side_effect=suspend)
        report = await sweeper.tick()

        assert report.failed == 1
        assert report.suspended == 1
        assert (await seeded_store.get_instance(first)).status == InstanceStatus.ACTIVE
        assert (await seeded_store.get_instance(second)).status == InstanceStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_overlapping_passes_charge_once(self, orchestrator, sweeper, seeded_store, clock):
        await seeded_store.save_account(Account(id="acct-1", coin_balance=Decimal("300"), panel_user_id=7))
        await buy(orchestrator)
        now = clock.advance(days=31)

        reports = await asyncio.gather(
            sweeper.run_expiry_pass(now),
            sweeper.run_expiry_pass(now),
        )

        assert sum(r.renewed for r in reports) == 1
        assert (await seeded_store.get_account("acct-1")).coin_balance == Decimal("100")

    @pytest.mark.asyncio
    async def test_renewal_during_remote_suspend_keeps_instance_active(
        self, orchestrator, sweeper, seeded_store, panel, clock
    ):
        instance_id = await buy(orchestrator)
        clock.advance(days=31)
        remote_suspend = panel.suspend_instance

        async def suspend_while_user_renews(external_id):
            await orchestrator.ledger.credit("acct-1", Currency.COIN, Decimal("100"), reason="top_up")
            await orchestrator.renew("acct-1", instance_id)
            await remote_suspend(external_id)

        panel.suspend_instance = suspend_while_user_renews
        report = await sweeper.tick()

        assert report.suspended == 0
        instance = await seeded_store.get_instance(instance_id)
        assert instance.status == InstanceStatus.ACTIVE
        assert instance.expires_at == clock() + timedelta(days=30)
        assert instance.grace_expires_at is None
        assert panel.unsuspended == [instance.external_id]

    @pytest.mark.asyncio
    async def test_failed_unsuspend_after_concurrent_renewal_is_reported(
        self, orchestrator, sweeper, seeded_store, panel, clock, caplog
    ):
        instance_id = await buy(orchestrator)
        clock.advance(days=31)
        remote_suspend = panel.suspend_instance
        panel.fail_unsuspend = True

        async def suspend_while_user_renews(external_id):
            await orchestrator.ledger.credit("acct-1", Currency.COIN, Decimal("100"), reason="top_up")
            await orchestrator.renew("acct-1", instance_id)
            await remote_suspend(external_id)

        panel.suspend_instance = suspend_while_user_renews
        with caplog.at_level(logging.ERROR, logger="lease_plane.sweeper"):
            report = await sweeper.tick()

        assert report.failed == 1
        assert "RECONCILIATION REQUIRED" in caplog.text
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.ACTIVE


class TestGracePass:

    @pytest.mark.asyncio
    async def test_delete_failure_leaves_instance_suspended(
        self, orchestrator, sweeper, seeded_store, panel, clock
    ):
        instance_id = await buy(orchestrator)
        await orchestrator.admin_suspend(instance_id)
        clock.advance(hours=13)
        panel.fail_delete = True

        report = await sweeper.tick()
        assert report.failed == 1
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_grace_pass_twice_is_a_noop(self, orchestrator, sweeper, seeded_store, panel, clock):
        instance_id = await buy(orchestrator)
        await orchestrator.admin_suspend(instance_id)
        now = clock.advance(hours=13)

        first = await sweeper.run_grace_pass(now)
        second = await sweeper.run_grace_pass(now)

        assert first.reclaimed == 1
        assert second.reclaimed == 0
        assert second.failed == 0
        assert len(panel.deleted) == 1
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.DELETED

    @pytest.mark.asyncio
    async def test_renewed_in_grace_is_not_reclaimed(self, orchestrator, sweeper, seeded_store, clock):
        await seeded_store.save_account(Account(id="acct-1", coin_balance=Decimal("200"), panel_user_id=7))
        instance_id = await buy(orchestrator)
        await orchestrator.admin_suspend(instance_id)

        clock.advance(hours=6)
        await orchestrator.renew("acct-1", instance_id)
        clock.advance(hours=12)
        report = await sweeper.tick()

        assert report.reclaimed == 0
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_sweep_during_pending_unsuspend_does_not_delete(
        self, orchestrator, sweeper, seeded_store, panel, clock
    ):
        await seeded_store.save_account(Account(id="acct-1", coin_balance=Decimal("200"), panel_user_id=7))
        instance_id = await buy(orchestrator)
        await orchestrator.admin_suspend(instance_id)
        clock.advance(hours=11, minutes=59)
        remote_unsuspend = panel.unsuspend_instance
        reports = []

        async def unsuspend_while_sweeping(external_id):
            clock.advance(minutes=2)
            reports.append(await sweeper.tick())
            await remote_unsuspend(external_id)

        panel.unsuspend_instance = unsuspend_while_sweeping
        await orchestrator.renew("acct-1", instance_id)

        assert reports[0].reclaimed == 0
        assert panel.deleted == []
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stale_listing_is_rechecked_before_delete(
        self, orchestrator, sweeper, seeded_store, panel, clock, monkeypatch
    ):
        await seeded_store.save_account(Account(id="acct-1", coin_balance=Decimal("200"), panel_user_id=7))
        instance_id = await buy(orchestrator)
        await orchestrator.admin_suspend(instance_id)
        stale = [await seeded_store.get_instance(instance_id)]

        clock.advance(hours=6)
        await orchestrator.renew("acct-1", instance_id)

        monkeypatch.setattr(seeded_store, "list_grace_expired", AsyncMock(return_value=stale))
        report = await sweeper.run_grace_pass(clock.advance(hours=7))

        assert report.reclaimed == 0
        assert report.failed == 0
        assert panel.deleted == []
        assert (await seeded_store.get_instance(instance_id)).status == InstanceStatus.ACTIVE


class TestLoop:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, sweeper):
        sweeper.interval_seconds = 3600
        sweeper.start()
        await asyncio.sleep(0)
        assert sweeper.running is True

        await sweeper.stop()
        assert sweeper.running is False

    @pytest.mark.asyncio
    async def test_loop_survives_tick_errors(self, sweeper):
        calls = []

        async def failing_tick():
            calls.append(True)
            raise RuntimeError("store offline")

        sweeper.tick = failing_tick
        sweeper.interval_seconds = 0
        sweeper.start()
        for _ in range(5):
            await asyncio.sleep(0)
        await sweeper.stop()

        assert len(calls) >= 2

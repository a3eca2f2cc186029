"""
Lease Plane Lifecycle Sweeper
=============================

Background service that walks leased instances on a timer.

Runs as a background task in the FastAPI application.

Expiry pass:
    active + expires_at <= now -> charge one renewal through the ledger.
    If the charge fails for any reason, suspend remotely and record
    suspended / suspended_at / grace_expires_at. If the remote suspend
    fails the instance stays active and the next tick retries. If the
    instance was renewed while the remote suspend was in flight, the
    suspend is lifted and nothing is recorded.

Grace pass:
    suspended + grace_expires_at <= now -> re-read, delete remotely, then
    record deleted. If the remote delete fails the instance stays suspended.

Each record is re-checked inside its unit of work, so overlapping ticks
never charge or transition the same instance twice. A failure on one
instance is logged and the batch continues.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from lease_plane.errors import InvalidStateError
from lease_plane.ledger import Ledger
from lease_plane.models import Instance, InstanceStatus, utcnow
from lease_plane.panel.base import PanelError, PanelInterface
from lease_plane.store.base import RecordStore, UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Outcome counts for one tick."""
    renewed: int = 0
    suspended: int = 0
    reclaimed: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "renewed": self.renewed,
            "suspended": self.suspended,
            "reclaimed": self.reclaimed,
            "failed": self.failed,
        }


class LifecycleSweeper:
    """
    Renews, suspends and reclaims instances on a fixed schedule.

    Never raises per-instance errors to the caller.
    """

    def __init__(
        self,
        store: RecordStore,
        ledger: Ledger,
        panel: PanelInterface,
        interval_seconds: int = 300,  # 5 minutes
        grace_period_hours: int = 12,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.panel = panel
        self.interval_seconds = interval_seconds
        self.grace_period = timedelta(hours=grace_period_hours)
        self.now = now_fn
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    # =========================================
    # LOOP
    # =========================================

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the sweep loop as a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Lifecycle sweeper started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the sweep loop and wait for it to exit."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Lifecycle sweeper stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Sweep cycle failed: {e}")

            await asyncio.sleep(self.interval_seconds)

    async def tick(self) -> SweepReport:
        """Run both passes once."""
        async with self._tick_lock:
            now = self.now()
            report = SweepReport()
            await self.run_expiry_pass(now, report)
            await self.run_grace_pass(now, report)

        if report.renewed or report.suspended or report.reclaimed or report.failed:
            logger.info(
                f"Sweep complete: renewed={report.renewed} suspended={report.suspended} "
                f"reclaimed={report.reclaimed} failed={report.failed}"
            )
        return report

    # =========================================
    # EXPIRY PASS
    # =========================================

    async def run_expiry_pass(self, now: datetime, report: Optional[SweepReport] = None) -> SweepReport:
        report = report or SweepReport()
        due = await self.store.list_due_for_renewal(now)
        if due:
            logger.debug(f"Expiry pass: {len(due)} instance(s) due")

        for instance in due:
            context = {
                "account_id": instance.account_id,
                "instance_id": instance.id,
                "overdue_seconds": int((now - instance.expires_at).total_seconds()),
            }
            try:
                await self._expire(instance, now, report, context)
            except Exception as e:
                report.failed += 1
                logger.exception(f"Expiry handling failed: {e}", extra=context)
        return report

    async def _expire(self, instance: Instance, now: datetime, report: SweepReport, context: Dict[str, Any]):
        try:
            new_expiry = await self._charge_renewal(instance, now)
        except InvalidStateError:
            logger.debug("Instance changed since listing, skipping", extra=context)
            return
        except Exception as e:
            logger.info(f"Auto-renewal failed ({e}), suspending", extra=context)
        else:
            report.renewed += 1
            logger.info(f"Auto-renewed until {new_expiry.isoformat()}", extra=context)
            return

        try:
            await self.panel.suspend_instance(instance.external_id)
        except PanelError as e:
            report.failed += 1
            logger.warning(f"Remote suspend failed, will retry next tick: {e}", extra=context)
            return

        async with self.store.unit_of_work(instance.account_id) as uow:
            current = await uow.get_instance(instance.id)
            if current is None or current.status != InstanceStatus.ACTIVE:
                return
            renewed_meanwhile = not current.is_expired(now)
            if not renewed_meanwhile:
                await uow.update_instance(replace(
                    current,
                    status=InstanceStatus.SUSPENDED,
                    suspended_at=now,
                    grace_expires_at=now + self.grace_period,
                ))

        if renewed_meanwhile:
            await self._undo_suspend(instance, report, context)
            return

        report.suspended += 1
        logger.info(f"Suspended, grace until {(now + self.grace_period).isoformat()}", extra=context)

    async def _undo_suspend(self, instance: Instance, report: SweepReport, context: Dict[str, Any]):
        """Lift a remote suspend issued for an instance that was renewed in the meantime."""
        try:
            await self.panel.unsuspend_instance(instance.external_id)
        except PanelError as e:
            report.failed += 1
            logger.error(
                f"RECONCILIATION REQUIRED: instance renewed during suspend but remote unsuspend failed: {e}",
                extra=context,
            )
            return
        logger.info("Instance renewed during suspend, remote suspend lifted", extra=context)

    async def _charge_renewal(self, instance: Instance, now: datetime) -> datetime:
        plan = await self.store.get_plan(instance.plan_id)
        if plan is None or plan.is_lifetime:
            raise ValueError(f"Plan {instance.plan_id} cannot be renewed")

        async def extend(uow: UnitOfWork) -> datetime:
            current = await uow.get_instance(instance.id)
            if current is None or current.status != InstanceStatus.ACTIVE or not current.is_expired(now):
                raise InvalidStateError("Instance is no longer due for renewal")
            new_expiry = max(now, current.expires_at) + plan.duration()
            await uow.update_instance(replace(current, expires_at=new_expiry))
            return new_expiry

        return await self.ledger.with_debit(
            instance.account_id, instance.currency, plan.price, extend,
            reason="auto_renewal", reference=f"instance:{instance.id}",
        )

    # =========================================
    # GRACE PASS
    # =========================================

    async def run_grace_pass(self, now: datetime, report: Optional[SweepReport] = None) -> SweepReport:
        report = report or SweepReport()
        expired = await self.store.list_grace_expired(now)
        if expired:
            logger.debug(f"Grace pass: {len(expired)} instance(s) past grace")

        for instance in expired:
            context = {
                "account_id": instance.account_id,
                "instance_id": instance.id,
                "overdue_seconds": int((now - instance.grace_expires_at).total_seconds()),
            }
            try:
                await self._reclaim(instance, now, report, context)
            except Exception as e:
                report.failed += 1
                logger.exception(f"Reclamation failed: {e}", extra=context)
        return report

    async def _reclaim(self, instance: Instance, now: datetime, report: SweepReport, context: Dict[str, Any]):
        # A renewal that committed after listing clears the grace window
        current = await self.store.get_instance(instance.id)
        if current is None or current.status != InstanceStatus.SUSPENDED or not current.grace_elapsed(now):
            logger.debug("Instance no longer past grace, skipping", extra=context)
            return

        try:
            await self.panel.delete_instance(instance.external_id)
        except PanelError as e:
            report.failed += 1
            logger.warning(f"Remote delete failed, will retry next tick: {e}", extra=context)
            return

        async with self.store.unit_of_work(instance.account_id) as uow:
            current = await uow.get_instance(instance.id)
            if current is None or current.status != InstanceStatus.SUSPENDED:
                return
            await uow.update_instance(replace(current, status=InstanceStatus.DELETED))

        report.reclaimed += 1
        logger.info("Grace period elapsed, instance deleted", extra=context)

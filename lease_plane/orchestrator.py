"""
Lease Plane Provisioning Orchestrator
=====================================

Composes the ledger, node selector and panel into purchase and renewal
operations, plus the administrative suspend / force-delete actions.

Purchase flow:
1. Validate plan, currency and account (no mutation yet)
2. One ledger unit of work: debit price, check and decrement stock,
   enforce one-per-account, write a purchase hold
3. Outside the unit of work: select a host, create the remote instance
4. Persist the instance record and release the hold

Every committed step pushes its undo onto a CompensationStack; any later
failure unwinds the stack newest-first. A compensation that itself fails
is logged as RECONCILIATION REQUIRED and never retried inline.

No panel call is ever awaited while a unit of work is open.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from lease_plane.compensation import CompensationStack
from lease_plane.errors import (
    GraceExpiredError,
    InvalidStateError,
    LeaseError,
    NotFoundError,
    OutOfStockError,
    PersistenceError,
    UpstreamFailureError,
    ValidationError,
)
from lease_plane.ledger import Ledger
from lease_plane.models import Currency, Instance, InstanceStatus, Plan, utcnow
from lease_plane.node_selector import NodeSelector
from lease_plane.panel.base import CreateInstanceRequest, PanelError, PanelInterface
from lease_plane.store.base import RecordStore, UnitOfWork

logger = logging.getLogger(__name__)


class ProvisioningOrchestrator:
    """
    Purchase, renewal and administrative lifecycle actions.

    The only layer that decides on compensation; ledger and selector
    errors reach it typed and are re-raised unchanged after unwinding.
    Untyped errors after the debit surface as UpstreamFailureError.
    """

    def __init__(
        self,
        store: RecordStore,
        ledger: Ledger,
        selector: NodeSelector,
        panel: PanelInterface,
        grace_period_hours: int = 12,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.selector = selector
        self.panel = panel
        self.grace_period = timedelta(hours=grace_period_hours)
        self.now = now_fn

    async def _unwind(self, stack: CompensationStack, context: Dict[str, Any]) -> None:
        failures = await stack.unwind()
        for description, error in failures:
            logger.error(
                f"RECONCILIATION REQUIRED: {stack.operation} could not undo '{description}': {error}",
                extra=context,
            )

    # =========================================
    # PURCHASE
    # =========================================

    async def _validate_purchase(self, account_id: str, plan_id: int, currency: Currency, name: str):
        if not name or not name.strip():
            raise ValidationError("Instance name is required")

        plan = await self.store.get_plan(plan_id)
        if plan is None:
            raise ValidationError(f"Unknown plan {plan_id}")
        if plan.currency != currency:
            raise ValidationError(
                f"Plan {plan_id} is sold in {plan.currency.value}, not {currency.value}"
            )

        account = await self.store.get_account(account_id)
        if account is None:
            raise ValidationError("Unknown account")
        if account.panel_user_id is None:
            raise ValidationError("Account is not linked to a panel user")

        return plan, account

    async def _release_reservation(self, account_id: str, plan_id: int, hold_id: str, restock: bool):
        async with self.store.unit_of_work(account_id) as uow:
            if restock:
                plan = await uow.get_plan(plan_id, for_update=True)
                if plan is not None:
                    await uow.set_stock(plan_id, (plan.stock or 0) + 1)
            await uow.release_hold(hold_id)

    async def purchase(
        self,
        account_id: str,
        plan_id: int,
        currency: Currency,
        name: str,
        preferred_host_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Buy a new instance on a plan.

        Args:
            account_id: Buyer
            plan_id: Plan to buy
            currency: Currency the caller expects to pay in (must match the plan)
            name: Instance name shown in the panel
            preferred_host_id: Restrict placement to this host

        Returns:
            {"instance_id", "expires_at"} (expires_at is None for lifetime plans)

        Raises:
            ValidationError, InsufficientFundsError, OutOfStockError,
            NoCapacityError, HostUnavailableError, UpstreamUnavailableError,
            UpstreamFailureError, PersistenceError
        """
        plan, account = await self._validate_purchase(account_id, plan_id, currency, name)
        context = {"account_id": account_id, "plan_id": plan_id}
        logger.info(f"Purchase started: plan {plan.name} for {plan.price} {currency.value}", extra=context)

        async def reserve(uow: UnitOfWork):
            locked = await uow.get_plan(plan_id, for_update=True)
            if locked is None:
                raise ValidationError(f"Unknown plan {plan_id}")

            if locked.limited_stock:
                if (locked.stock or 0) <= 0:
                    raise OutOfStockError(f"Plan {locked.name} is out of stock")
                await uow.set_stock(plan_id, locked.stock - 1)

            if locked.one_per_account and await uow.count_live_leases(plan_id) > 0:
                raise ValidationError(f"Plan {locked.name} is limited to one per account")

            hold_id = await uow.add_hold(plan_id)
            return locked, hold_id

        locked, hold_id = await self.ledger.with_debit(
            account_id, currency, plan.price, reserve,
            reason="purchase", reference=f"plan:{plan_id}",
        )

        stack = CompensationStack("purchase")
        stack.push(
            "refund purchase",
            lambda: self.ledger.credit(
                account_id, currency, plan.price,
                reason="purchase_refund", reference=f"plan:{plan_id}",
            ),
        )
        stack.push(
            "release reservation",
            lambda: self._release_reservation(account_id, plan_id, hold_id, locked.limited_stock),
        )

        limits = locked.limits()
        try:
            placement = await self.selector.select(limits.memory_mb, limits.disk_mb, preferred_host_id)
        except LeaseError as e:
            logger.warning(f"Purchase aborted, no placement: {e}", extra=context)
            await self._unwind(stack, context)
            raise
        except asyncio.CancelledError:
            logger.warning("Purchase cancelled during placement", extra=context)
            await self._unwind(stack, context)
            raise
        except Exception as e:
            logger.exception(f"Placement failed unexpectedly: {e}", extra=context)
            await self._unwind(stack, context)
            raise UpstreamFailureError(f"Placement failed: {e}") from e

        try:
            external_id = await self.panel.create_instance(CreateInstanceRequest(
                name=name.strip(),
                panel_user_id=account.panel_user_id,
                host_id=placement.host_id,
                allocation_id=placement.allocation_id,
                limits=limits,
            ))
        except PanelError as e:
            logger.error(f"Remote create failed on host {placement.host_id}: {e}", extra=context)
            await self._unwind(stack, context)
            raise UpstreamFailureError(f"Instance creation failed: {e}") from e
        except asyncio.CancelledError:
            # The remote instance may exist without a known id
            logger.error(
                f"RECONCILIATION REQUIRED: purchase cancelled during remote create on host {placement.host_id}",
                extra=context,
            )
            await self._unwind(stack, context)
            raise
        except Exception as e:
            logger.exception(f"Remote create failed unexpectedly on host {placement.host_id}: {e}", extra=context)
            await self._unwind(stack, context)
            raise UpstreamFailureError(f"Instance creation failed: {e}") from e

        context["external_id"] = external_id
        stack.push("delete remote instance", lambda: self.panel.delete_instance(external_id))

        duration = locked.duration()
        instance = Instance(
            account_id=account_id,
            plan_id=plan_id,
            currency=currency,
            name=name.strip(),
            external_id=external_id,
            host_id=placement.host_id,
            status=InstanceStatus.ACTIVE,
            expires_at=self.now() + duration if duration else None,
        )

        try:
            async with self.store.unit_of_work(account_id) as uow:
                await uow.insert_instance(instance)
                await uow.release_hold(hold_id)
        except Exception as e:
            logger.error(f"Persisting instance for remote {external_id} failed: {e}", extra=context)
            await self._unwind(stack, context)
            raise PersistenceError("Instance was created but could not be recorded") from e

        stack.discard()
        logger.info(
            f"Purchase complete: instance {instance.id} on host {placement.host_id}",
            extra={**context, "instance_id": instance.id, "host_id": placement.host_id},
        )
        return {"instance_id": instance.id, "expires_at": instance.expires_at}

    # =========================================
    # RENEWAL
    # =========================================

    def _check_renewable(self, instance: Optional[Instance], account_id: str, now: datetime) -> Instance:
        if instance is None or instance.account_id != account_id:
            raise NotFoundError("Instance not found")
        if instance.status == InstanceStatus.DELETED:
            raise InvalidStateError("Instance has been deleted")
        if instance.status == InstanceStatus.SUSPENDED and instance.grace_elapsed(now):
            raise GraceExpiredError("Grace period has expired; the instance is scheduled for deletion")
        return instance

    async def _renewable_plan(self, instance: Instance) -> Plan:
        plan = await self.store.get_plan(instance.plan_id)
        if plan is None:
            raise ValidationError(f"Unknown plan {instance.plan_id}")
        if plan.is_lifetime:
            raise ValidationError("Lifetime instances do not expire")
        return plan

    async def renew(self, account_id: str, instance_id: str) -> Dict[str, Any]:
        """
        Extend an instance by one plan duration.

        Suspended instances inside their grace window are unsuspended
        after the charge commits.

        Returns:
            {"instance_id", "expires_at"}

        Raises:
            NotFoundError, InvalidStateError, GraceExpiredError,
            ValidationError, InsufficientFundsError, UpstreamFailureError
        """
        now = self.now()
        instance = self._check_renewable(await self.store.get_instance(instance_id), account_id, now)
        plan = await self._renewable_plan(instance)
        context = {"account_id": account_id, "instance_id": instance_id, "plan_id": plan.id}
        logger.info(f"Renewal started ({instance.status.value})", extra=context)

        async def extend(uow: UnitOfWork):
            # Grace is judged against the clock at lock time
            locked_now = self.now()
            current = self._check_renewable(await uow.get_instance(instance_id), account_id, locked_now)
            base = max(locked_now, current.expires_at) if current.expires_at else locked_now
            new_expiry = base + plan.duration()
            # A paid suspended instance leaves the grace pass until it is reactivated
            await uow.update_instance(replace(current, expires_at=new_expiry, grace_expires_at=None))
            return current, new_expiry

        previous, new_expiry = await self.ledger.with_debit(
            account_id, instance.currency, plan.price, extend,
            reason="renewal", reference=f"instance:{instance_id}",
        )

        if previous.status == InstanceStatus.SUSPENDED:
            await self._reactivate(previous, plan, new_expiry, context)

        logger.info(f"Renewal complete: expires at {new_expiry.isoformat()}", extra=context)
        return {"instance_id": instance_id, "expires_at": new_expiry}

    async def _restore_expiry(self, previous: Instance, new_expiry: datetime):
        async with self.store.unit_of_work(previous.account_id) as uow:
            current = await uow.get_instance(previous.id)
            if current is not None and current.expires_at == new_expiry:
                await uow.update_instance(replace(
                    current,
                    expires_at=previous.expires_at,
                    grace_expires_at=previous.grace_expires_at,
                ))

    async def _reactivate(self, previous: Instance, plan: Plan, new_expiry: datetime, context: Dict[str, Any]):
        stack = CompensationStack("renewal")
        stack.push(
            "refund renewal",
            lambda: self.ledger.credit(
                previous.account_id, previous.currency, plan.price,
                reason="renewal_refund", reference=f"instance:{previous.id}",
            ),
        )
        stack.push("restore expiry", lambda: self._restore_expiry(previous, new_expiry))

        try:
            await self.panel.unsuspend_instance(previous.external_id)
        except PanelError as e:
            logger.error(f"Remote unsuspend failed: {e}", extra=context)
            await self._unwind(stack, context)
            raise UpstreamFailureError(f"Instance could not be unsuspended: {e}") from e

        try:
            async with self.store.unit_of_work(previous.account_id) as uow:
                current = await uow.get_instance(previous.id)
                if current is not None and current.status == InstanceStatus.SUSPENDED:
                    await uow.update_instance(replace(
                        current,
                        status=InstanceStatus.ACTIVE,
                        suspended_at=None,
                        grace_expires_at=None,
                    ))
        except Exception as e:
            logger.error(
                f"RECONCILIATION REQUIRED: remote {previous.external_id} unsuspended "
                f"but local status not updated: {e}",
                extra=context,
            )
            raise PersistenceError("Instance was unsuspended but could not be recorded") from e

        stack.discard()
        logger.info("Instance unsuspended after renewal", extra=context)

    # =========================================
    # ADMINISTRATION
    # =========================================

    async def _get_instance(self, instance_id: str) -> Instance:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("Instance not found")
        return instance

    async def admin_suspend(self, instance_id: str) -> Dict[str, Any]:
        """Suspend an active instance now; the normal grace window applies."""
        instance = await self._get_instance(instance_id)
        if instance.status != InstanceStatus.ACTIVE:
            raise InvalidStateError(f"Instance is {instance.status.value}, not active")

        context = {"account_id": instance.account_id, "instance_id": instance_id}
        try:
            await self.panel.suspend_instance(instance.external_id)
        except PanelError as e:
            logger.error(f"Admin suspend failed remotely: {e}", extra=context)
            raise UpstreamFailureError(f"Instance could not be suspended: {e}") from e

        now = self.now()
        async with self.store.unit_of_work(instance.account_id) as uow:
            current = await uow.get_instance(instance_id)
            if current.status != InstanceStatus.ACTIVE:
                raise InvalidStateError(f"Instance is {current.status.value}, not active")
            current = replace(
                current,
                status=InstanceStatus.SUSPENDED,
                suspended_at=now,
                grace_expires_at=now + self.grace_period,
            )
            await uow.update_instance(current)

        logger.info("Instance suspended by administrator", extra=context)
        return current.to_dict()

    async def force_delete(self, instance_id: str) -> Dict[str, Any]:
        """Delete an active or suspended instance immediately, skipping grace."""
        instance = await self._get_instance(instance_id)
        if instance.status == InstanceStatus.DELETED:
            raise InvalidStateError("Instance has already been deleted")

        context = {"account_id": instance.account_id, "instance_id": instance_id}
        try:
            await self.panel.delete_instance(instance.external_id)
        except PanelError as e:
            logger.error(f"Force delete failed remotely: {e}", extra=context)
            raise UpstreamFailureError(f"Instance could not be deleted: {e}") from e

        async with self.store.unit_of_work(instance.account_id) as uow:
            current = await uow.get_instance(instance_id)
            current = replace(current, status=InstanceStatus.DELETED)
            await uow.update_instance(current)

        logger.info("Instance force-deleted by administrator", extra=context)
        return current.to_dict()

    # =========================================
    # READ MODELS
    # =========================================

    async def list_account_instances(self, account_id: str) -> List[Dict[str, Any]]:
        return [i.to_dict() for i in await self.store.list_account_instances(account_id)]

    async def list_expiring(self, within: timedelta = timedelta(hours=24)) -> List[Dict[str, Any]]:
        """Active instances that expire inside the window."""
        return [i.to_dict() for i in await self.store.list_expiring(self.now() + within)]

    async def list_suspended(self) -> List[Dict[str, Any]]:
        return [i.to_dict() for i in await self.store.list_suspended()]

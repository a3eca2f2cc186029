"""
Lease Plane In-Memory Record Store
==================================

asyncio-safe in-memory store used when no database is configured and
by the test suite.

Units of work hold a per-account asyncio.Lock for their whole life,
stage their writes on copies and apply them only on a clean exit.
Plans read with for_update=True additionally hold a per-plan lock
(always taken after the account lock, so lock order is fixed).
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple
import uuid

from lease_plane.models import Account, Currency, Instance, InstanceStatus, LedgerEntry, Plan
from .base import RecordStore, UnitOfWork


class InMemoryUnitOfWork(UnitOfWork):

    def __init__(self, store: "InMemoryStore", account_id: str):
        self.store = store
        self.account_id = account_id
        self._account: Optional[Account] = None
        self._plans: Dict[int, Plan] = {}
        self._instances: Dict[str, Instance] = {}
        self._holds_added: Dict[str, int] = {}
        self._holds_released: Set[str] = set()
        self._entries: List[LedgerEntry] = []
        self._plan_locks_held: Set[int] = set()

    async def get_account(self) -> Optional[Account]:
        if self._account is not None:
            return replace(self._account)
        account = self.store._accounts.get(self.account_id)
        return replace(account) if account else None

    async def set_balance(self, currency: Currency, value: Decimal) -> None:
        account = await self.get_account()
        if account is None:
            raise KeyError(f"Account {self.account_id} not found")
        self._account = account.with_balance(currency, value)

    async def record_entry(self, entry: LedgerEntry) -> None:
        self._entries.append(entry)

    async def get_plan(self, plan_id: int, for_update: bool = False) -> Optional[Plan]:
        if for_update and plan_id not in self._plan_locks_held:
            await self.store._plan_locks[plan_id].acquire()
            self._plan_locks_held.add(plan_id)
        if plan_id in self._plans:
            return replace(self._plans[plan_id])
        plan = self.store._plans.get(plan_id)
        return replace(plan) if plan else None

    async def set_stock(self, plan_id: int, stock: int) -> None:
        plan = await self.get_plan(plan_id)
        if plan is None:
            raise KeyError(f"Plan {plan_id} not found")
        self._plans[plan_id] = replace(plan, stock=stock)

    async def count_live_leases(self, plan_id: int) -> int:
        instances = dict(self.store._instances)
        instances.update(self._instances)
        live = sum(
            1 for i in instances.values()
            if i.account_id == self.account_id
            and i.plan_id == plan_id
            and i.status != InstanceStatus.DELETED
        )
        holds = {
            hold_id: held_plan
            for hold_id, (account_id, held_plan) in self.store._holds.items()
            if account_id == self.account_id and hold_id not in self._holds_released
        }
        holds.update(self._holds_added)
        return live + sum(1 for held_plan in holds.values() if held_plan == plan_id)

    async def add_hold(self, plan_id: int) -> str:
        hold_id = str(uuid.uuid4())
        self._holds_added[hold_id] = plan_id
        return hold_id

    async def release_hold(self, hold_id: str) -> None:
        if self._holds_added.pop(hold_id, None) is None:
            self._holds_released.add(hold_id)

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        if instance_id in self._instances:
            return replace(self._instances[instance_id])
        instance = self.store._instances.get(instance_id)
        return replace(instance) if instance else None

    async def insert_instance(self, instance: Instance) -> None:
        if instance.id in self.store._instances or instance.id in self._instances:
            raise KeyError(f"Instance {instance.id} already exists")
        self._instances[instance.id] = replace(instance)

    async def update_instance(self, instance: Instance) -> None:
        self._instances[instance.id] = replace(instance)

    def _commit(self) -> None:
        if self._account is not None:
            self.store._accounts[self.account_id] = self._account
        self.store._plans.update(self._plans)
        self.store._instances.update(self._instances)
        for hold_id, plan_id in self._holds_added.items():
            self.store._holds[hold_id] = (self.account_id, plan_id)
        for hold_id in self._holds_released:
            self.store._holds.pop(hold_id, None)
        self.store._entries.extend(self._entries)

    def _release_plan_locks(self) -> None:
        for plan_id in self._plan_locks_held:
            self.store._plan_locks[plan_id].release()
        self._plan_locks_held.clear()


class InMemoryStore(RecordStore):
    """
    In-memory record store.

    State is lost on restart; production deployments use PostgresStore.
    """

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._plans: Dict[int, Plan] = {}
        self._instances: Dict[str, Instance] = {}
        self._holds: Dict[str, Tuple[str, int]] = {}
        self._entries: List[LedgerEntry] = []
        self._account_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._plan_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def unit_of_work(self, account_id: str) -> AsyncIterator[InMemoryUnitOfWork]:
        async with self._account_locks[account_id]:
            uow = InMemoryUnitOfWork(self, account_id)
            try:
                yield uow
                uow._commit()
            finally:
                uow._release_plan_locks()

    async def save_account(self, account: Account) -> None:
        self._accounts[account.id] = replace(account)

    async def save_plan(self, plan: Plan) -> None:
        self._plans[plan.id] = replace(plan)

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return replace(account) if account else None

    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        plan = self._plans.get(plan_id)
        return replace(plan) if plan else None

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        instance = self._instances.get(instance_id)
        return replace(instance) if instance else None

    def _select(self, predicate) -> List[Instance]:
        return [replace(i) for i in self._instances.values() if predicate(i)]

    async def list_account_instances(self, account_id: str) -> List[Instance]:
        instances = self._select(
            lambda i: i.account_id == account_id and i.status != InstanceStatus.DELETED
        )
        instances.sort(key=lambda i: i.created_at, reverse=True)
        return instances

    async def list_due_for_renewal(self, now: datetime) -> List[Instance]:
        return self._select(lambda i: i.status == InstanceStatus.ACTIVE and i.is_expired(now))

    async def list_grace_expired(self, now: datetime) -> List[Instance]:
        return self._select(lambda i: i.status == InstanceStatus.SUSPENDED and i.grace_elapsed(now))

    async def list_expiring(self, before: datetime) -> List[Instance]:
        instances = self._select(
            lambda i: i.status == InstanceStatus.ACTIVE and i.is_expired(before)
        )
        instances.sort(key=lambda i: i.expires_at)
        return instances

    async def list_suspended(self) -> List[Instance]:
        return self._select(lambda i: i.status == InstanceStatus.SUSPENDED)

    async def list_entries(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        entries = [e for e in self._entries if e.account_id == account_id]
        return list(reversed(entries))[:limit]

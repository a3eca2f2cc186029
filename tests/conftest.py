"""
Lease Plane Test Fixtures
=========================

Shared fixtures for all test modules.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from lease_plane.ledger import Ledger
from lease_plane.models import Account, Currency, DurationType, Plan
from lease_plane.node_selector import NodeSelector
from lease_plane.orchestrator import ProvisioningOrchestrator
from lease_plane.panel.base import (
    Allocation,
    CreateInstanceRequest,
    Host,
    PanelError,
    PanelInterface,
    PanelTimeoutError,
    PanelUnavailableError,
)
from lease_plane.store.memory import InMemoryStore
from lease_plane.sweeper import LifecycleSweeper


# ============================================
# CLOCK
# ============================================

class FakeClock:
    """Controllable clock passed as now_fn."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


# ============================================
# MOCK PANEL
# ============================================

class FakePanel(PanelInterface):
    """In-memory panel that records every remote call."""
    PANEL_ID = "fake"

    def __init__(self, hosts: Optional[List[Host]] = None, allocations: Optional[Dict[int, List[Allocation]]] = None):
        self.hosts = hosts or []
        self.allocations = allocations or {}
        self.created: Dict[str, CreateInstanceRequest] = {}
        self.suspended: List[str] = []
        self.unsuspended: List[str] = []
        self.deleted: List[str] = []
        self.fail_create = False
        self.fail_suspend = False
        self.fail_unsuspend = False
        self.fail_delete = False
        self._next_id = 100

    async def list_hosts(self) -> List[Host]:
        return list(self.hosts)

    async def list_free_allocations(self, host_id: int) -> List[Allocation]:
        return list(self.allocations.get(host_id, []))

    async def create_instance(self, request: CreateInstanceRequest) -> str:
        # Yield so concurrent purchases interleave here
        await asyncio.sleep(0)
        if self.fail_create:
            raise PanelError("Allocation already assigned", status_code=422)
        self._next_id += 1
        external_id = str(self._next_id)
        self.created[external_id] = request
        return external_id

    async def suspend_instance(self, external_id: str) -> None:
        if self.fail_suspend:
            raise PanelTimeoutError(f"POST /servers/{external_id}/suspend timed out")
        self.suspended.append(external_id)

    async def unsuspend_instance(self, external_id: str) -> None:
        if self.fail_unsuspend:
            raise PanelError("Server is locked", status_code=409)
        self.unsuspended.append(external_id)

    async def delete_instance(self, external_id: str) -> None:
        if self.fail_delete:
            raise PanelUnavailableError(f"DELETE /servers/{external_id} failed: connection refused")
        self.deleted.append(external_id)


@pytest.fixture
def panel():
    """Two hosts with free allocations; node-b has more memory headroom."""
    return FakePanel(
        hosts=[
            Host(id=1, name="node-a", memory_limit=8192, disk_limit=102400, memory_used=2048),
            Host(id=2, name="node-b", memory_limit=16384, disk_limit=102400, memory_used=2048),
        ],
        allocations={
            1: [Allocation(id=11, ip="10.0.0.1", port=25565), Allocation(id=12, ip="10.0.0.1", port=25566)],
            2: [Allocation(id=21, ip="10.0.0.2", port=25565), Allocation(id=22, ip="10.0.0.2", port=25566)],
        },
    )


# ============================================
# PLANS & ACCOUNTS
# ============================================

COIN_PLAN = Plan(
    id=1, name="Starter", currency=Currency.COIN, price=Decimal("100"),
    ram_gb=2, cpu=1, storage_gb=10, duration_type=DurationType.MONTHLY, duration_days=1,
)
STOCK_PLAN = Plan(
    id=2, name="Launch Special", currency=Currency.COIN, price=Decimal("50"),
    ram_gb=1, cpu=1, storage_gb=5, duration_type=DurationType.WEEKLY, duration_days=1,
    limited_stock=True, stock=1,
)
ONE_PER_ACCOUNT_PLAN = Plan(
    id=3, name="Free Tier", currency=Currency.COIN, price=Decimal("0"),
    ram_gb=1, cpu=1, storage_gb=5, duration_type=DurationType.DAYS, duration_days=3,
    one_per_account=True,
)
REAL_PLAN = Plan(
    id=4, name="Pro", currency=Currency.REAL, price=Decimal("9.99"),
    ram_gb=4, cpu=2, storage_gb=20, duration_type=DurationType.MONTHLY, duration_days=1,
)
LIFETIME_PLAN = Plan(
    id=5, name="Founder", currency=Currency.COIN, price=Decimal("500"),
    ram_gb=2, cpu=1, storage_gb=10, duration_type=DurationType.LIFETIME,
)

ALL_PLANS = [COIN_PLAN, STOCK_PLAN, ONE_PER_ACCOUNT_PLAN, REAL_PLAN, LIFETIME_PLAN]


async def seed(store: InMemoryStore, accounts: List[Account]) -> None:
    for plan in ALL_PLANS:
        await store.save_plan(plan)
    for account in accounts:
        await store.save_account(account)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest_asyncio.fixture
async def seeded_store(store):
    """Store with every plan and an account holding exactly 100 coins."""
    await seed(store, [
        Account(id="acct-1", coin_balance=Decimal("100"), real_balance=Decimal("20"), panel_user_id=7),
        Account(id="acct-2", coin_balance=Decimal("100"), real_balance=Decimal("0"), panel_user_id=8),
    ])
    return store


# ============================================
# CORE SERVICES
# ============================================

@pytest.fixture
def ledger(seeded_store):
    return Ledger(seeded_store)


@pytest.fixture
def selector(panel):
    return NodeSelector(panel)


@pytest.fixture
def orchestrator(seeded_store, ledger, selector, panel, clock):
    return ProvisioningOrchestrator(
        store=seeded_store,
        ledger=ledger,
        selector=selector,
        panel=panel,
        grace_period_hours=12,
        now_fn=clock,
    )


@pytest.fixture
def sweeper(seeded_store, ledger, panel, clock):
    return LifecycleSweeper(
        store=seeded_store,
        ledger=ledger,
        panel=panel,
        interval_seconds=300,
        grace_period_hours=12,
        now_fn=clock,
    )

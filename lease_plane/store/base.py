"""
Lease Plane Record Store Interfaces
===================================

A record store holds accounts, plans, instances, purchase holds and the
ledger journal. All writes to balances, stock and instance lifecycle
fields happen inside a unit of work scoped to one account:

- units of work for the same account are strictly serialized
- units of work for different accounts may run concurrently
- reading a plan with for_update=True also serializes on that plan
- leaving the block normally commits; raising rolls everything back

No remote call may be awaited while a unit of work is open.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import AsyncContextManager, List, Optional

from lease_plane.models import Account, Currency, Instance, LedgerEntry, Plan


class UnitOfWork(ABC):
    """Reads and writes performed under one account's serialization."""

    account_id: str

    @abstractmethod
    async def get_account(self) -> Optional[Account]:
        """Re-read the locked account."""
        pass

    @abstractmethod
    async def set_balance(self, currency: Currency, value: Decimal) -> None:
        pass

    @abstractmethod
    async def record_entry(self, entry: LedgerEntry) -> None:
        pass

    @abstractmethod
    async def get_plan(self, plan_id: int, for_update: bool = False) -> Optional[Plan]:
        pass

    @abstractmethod
    async def set_stock(self, plan_id: int, stock: int) -> None:
        pass

    @abstractmethod
    async def count_live_leases(self, plan_id: int) -> int:
        """Non-deleted instances plus in-flight purchase holds on this plan."""
        pass

    @abstractmethod
    async def add_hold(self, plan_id: int) -> str:
        pass

    @abstractmethod
    async def release_hold(self, hold_id: str) -> None:
        pass

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        pass

    @abstractmethod
    async def insert_instance(self, instance: Instance) -> None:
        pass

    @abstractmethod
    async def update_instance(self, instance: Instance) -> None:
        pass


class RecordStore(ABC):
    """Persistent state for the lease plane."""

    @abstractmethod
    def unit_of_work(self, account_id: str) -> AsyncContextManager[UnitOfWork]:
        pass

    # =========================================
    # SEEDING / ADMINISTRATION
    # =========================================

    @abstractmethod
    async def save_account(self, account: Account) -> None:
        pass

    @abstractmethod
    async def save_plan(self, plan: Plan) -> None:
        pass

    # =========================================
    # PLAIN READS (no serialization)
    # =========================================

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        pass

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        pass

    @abstractmethod
    async def list_account_instances(self, account_id: str) -> List[Instance]:
        """Non-deleted instances, newest first."""
        pass

    @abstractmethod
    async def list_due_for_renewal(self, now: datetime) -> List[Instance]:
        """Active instances with expires_at <= now."""
        pass

    @abstractmethod
    async def list_grace_expired(self, now: datetime) -> List[Instance]:
        """Suspended instances with grace_expires_at <= now."""
        pass

    @abstractmethod
    async def list_expiring(self, before: datetime) -> List[Instance]:
        """Active instances expiring at or before `before`."""
        pass

    @abstractmethod
    async def list_suspended(self) -> List[Instance]:
        pass

    @abstractmethod
    async def list_entries(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        """Ledger journal for an account, newest first."""
        pass

    async def close(self) -> None:
        return None

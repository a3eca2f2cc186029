"""
Lease Plane Records
===================

Accounts, plans, leased instances and ledger entries as stored
by the record store, plus the plan duration policy.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Currency(Enum):
    """The two independent balances an account holds."""
    COIN = "coin"
    REAL = "real"


class DurationType(Enum):
    DAYS = "days"
    CUSTOM = "custom"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    LIFETIME = "lifetime"


class InstanceStatus(Enum):
    """Lease lifecycle. DELETED is terminal and kept for audit."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


# Days contributed by one unit of `duration_days` for each policy
DURATION_MULTIPLIER = {
    DurationType.DAYS: 1,
    DurationType.CUSTOM: 1,
    DurationType.WEEKLY: 7,
    DurationType.MONTHLY: 30,
}


@dataclass(frozen=True)
class ResourceLimits:
    """Limits sent to the panel: MB for memory/disk, percent for CPU."""
    memory_mb: int
    disk_mb: int
    cpu_percent: int


@dataclass
class Plan:
    """A priced resource bundle sold in a single currency."""
    id: int
    name: str
    currency: Currency
    price: Decimal
    ram_gb: int
    cpu: int
    storage_gb: int
    duration_type: DurationType = DurationType.MONTHLY
    duration_days: int = 1
    limited_stock: bool = False
    stock: Optional[int] = None
    one_per_account: bool = False

    @property
    def is_lifetime(self) -> bool:
        return self.duration_type == DurationType.LIFETIME

    def duration(self) -> Optional[timedelta]:
        """Lease length, or None for lifetime plans."""
        if self.is_lifetime:
            return None
        return timedelta(days=self.duration_days * DURATION_MULTIPLIER[self.duration_type])

    def limits(self) -> ResourceLimits:
        return ResourceLimits(
            memory_mb=self.ram_gb * 1024,
            disk_mb=self.storage_gb * 1024,
            cpu_percent=self.cpu * 100,
        )

    def in_stock(self) -> bool:
        return not self.limited_stock or (self.stock or 0) > 0


@dataclass
class Account:
    id: str
    coin_balance: Decimal = Decimal("0")
    real_balance: Decimal = Decimal("0")
    panel_user_id: Optional[int] = None

    def balance(self, currency: Currency) -> Decimal:
        return self.coin_balance if currency == Currency.COIN else self.real_balance

    def with_balance(self, currency: Currency, value: Decimal) -> "Account":
        if currency == Currency.COIN:
            return replace(self, coin_balance=value)
        return replace(self, real_balance=value)


@dataclass
class Instance:
    """A leased instance and its position in the billing lifecycle."""
    account_id: str
    plan_id: int
    currency: Currency
    name: str
    external_id: str
    host_id: Optional[int] = None
    status: InstanceStatus = InstanceStatus.ACTIVE
    expires_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    grace_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def grace_elapsed(self, now: datetime) -> bool:
        return self.grace_expires_at is not None and self.grace_expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "plan_id": self.plan_id,
            "currency": self.currency.value,
            "name": self.name,
            "external_id": self.external_id,
            "host_id": self.host_id,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "suspended_at": self.suspended_at.isoformat() if self.suspended_at else None,
            "grace_expires_at": self.grace_expires_at.isoformat() if self.grace_expires_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class LedgerEntry:
    """One signed balance movement, written in the same unit of work as the change."""
    account_id: str
    currency: Currency
    amount: Decimal
    balance_after: Decimal
    reason: str
    reference: str = ""
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "currency": self.currency.value,
            "amount": str(self.amount),
            "balance_after": str(self.balance_after),
            "reason": self.reason,
            "reference": self.reference,
            "created_at": self.created_at.isoformat(),
        }

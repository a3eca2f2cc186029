"""
Tests for Lease Plane records
=============================

Plan duration policy, resource limits and instance lifecycle helpers.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from lease_plane.models import (
    Account,
    Currency,
    DurationType,
    Instance,
    Plan,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_plan(duration_type, duration_days=1, **kwargs):
    return Plan(
        id=1, name="Test", currency=Currency.COIN, price=Decimal("10"),
        ram_gb=2, cpu=1, storage_gb=10,
        duration_type=duration_type, duration_days=duration_days, **kwargs,
    )


class TestPlanDuration:

    @pytest.mark.parametrize("duration_type,days,expected", [
        (DurationType.DAYS, 3, 3),
        (DurationType.CUSTOM, 45, 45),
        (DurationType.WEEKLY, 2, 14),
        (DurationType.MONTHLY, 1, 30),
    ])
    def test_duration_policy(self, duration_type, days, expected):
        assert make_plan(duration_type, days).duration() == timedelta(days=expected)

    def test_lifetime_has_no_duration(self):
        plan = make_plan(DurationType.LIFETIME)
        assert plan.is_lifetime
        assert plan.duration() is None


class TestPlanLimits:

    def test_gb_and_cores_converted(self):
        limits = make_plan(DurationType.MONTHLY).limits()
        assert limits.memory_mb == 2048
        assert limits.disk_mb == 10240
        assert limits.cpu_percent == 100

    def test_stock(self):
        assert make_plan(DurationType.DAYS).in_stock()
        assert make_plan(DurationType.DAYS, limited_stock=True, stock=1).in_stock()
        assert not make_plan(DurationType.DAYS, limited_stock=True, stock=0).in_stock()
        assert not make_plan(DurationType.DAYS, limited_stock=True, stock=None).in_stock()


class TestAccount:

    def test_balances_are_independent(self):
        account = Account(id="acct-1", coin_balance=Decimal("5"), real_balance=Decimal("1.50"))
        updated = account.with_balance(Currency.REAL, Decimal("0.50"))
        assert updated.balance(Currency.REAL) == Decimal("0.50")
        assert updated.balance(Currency.COIN) == Decimal("5")
        assert account.real_balance == Decimal("1.50")


class TestInstance:

    def test_expiry_and_grace(self):
        instance = Instance(
            account_id="acct-1", plan_id=1, currency=Currency.COIN, name="survival",
            external_id="101", expires_at=NOW, grace_expires_at=NOW + timedelta(hours=12),
        )
        assert instance.is_expired(NOW)
        assert not instance.is_expired(NOW - timedelta(seconds=1))
        assert not instance.grace_elapsed(NOW)
        assert instance.grace_elapsed(NOW + timedelta(hours=12))

    def test_lifetime_instance_never_expires(self):
        instance = Instance(
            account_id="acct-1", plan_id=5, currency=Currency.COIN, name="forever", external_id="102",
        )
        assert not instance.is_expired(NOW + timedelta(days=10000))
        data = instance.to_dict()
        assert data["expires_at"] is None
        assert data["status"] == "active"

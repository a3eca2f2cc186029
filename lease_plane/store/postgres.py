"""
Lease Plane PostgreSQL Record Store
===================================

asyncpg-backed record store. A unit of work is one transaction that
starts by locking the account row (SELECT ... FOR UPDATE), so units of
work for the same account queue on the row lock and different accounts
proceed in parallel. Plans read with for_update=True are row-locked too.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Optional
import uuid

import asyncpg

from lease_plane.models import (
    Account,
    Currency,
    DurationType,
    Instance,
    InstanceStatus,
    LedgerEntry,
    Plan,
)
from .base import RecordStore, UnitOfWork


def _account_from_row(row) -> Account:
    return Account(
        id=row["id"],
        coin_balance=row["coin_balance"],
        real_balance=row["real_balance"],
        panel_user_id=row["panel_user_id"],
    )


def _plan_from_row(row) -> Plan:
    return Plan(
        id=row["id"],
        name=row["name"],
        currency=Currency(row["currency"]),
        price=row["price"],
        ram_gb=row["ram_gb"],
        cpu=row["cpu"],
        storage_gb=row["storage_gb"],
        duration_type=DurationType(row["duration_type"]),
        duration_days=row["duration_days"],
        limited_stock=row["limited_stock"],
        stock=row["stock"],
        one_per_account=row["one_per_account"],
    )


def _instance_from_row(row) -> Instance:
    return Instance(
        id=row["id"],
        account_id=row["account_id"],
        plan_id=row["plan_id"],
        currency=Currency(row["currency"]),
        name=row["name"],
        external_id=row["external_id"],
        host_id=row["host_id"],
        status=InstanceStatus(row["status"]),
        expires_at=row["expires_at"],
        suspended_at=row["suspended_at"],
        grace_expires_at=row["grace_expires_at"],
        created_at=row["created_at"],
    )


def _entry_from_row(row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        account_id=row["account_id"],
        currency=Currency(row["currency"]),
        amount=row["amount"],
        balance_after=row["balance_after"],
        reason=row["reason"],
        reference=row["reference"],
        created_at=row["created_at"],
    )


class PostgresUnitOfWork(UnitOfWork):

    def __init__(self, conn: asyncpg.Connection, account_id: str):
        self.conn = conn
        self.account_id = account_id

    async def lock_account(self) -> None:
        await self.conn.execute(
            "SELECT id FROM accounts WHERE id = $1 FOR UPDATE",
            self.account_id,
        )

    async def get_account(self) -> Optional[Account]:
        row = await self.conn.fetchrow("SELECT * FROM accounts WHERE id = $1", self.account_id)
        return _account_from_row(row) if row else None

    async def set_balance(self, currency: Currency, value: Decimal) -> None:
        column = "coin_balance" if currency == Currency.COIN else "real_balance"
        await self.conn.execute(
            f"UPDATE accounts SET {column} = $2 WHERE id = $1",
            self.account_id,
            value,
        )

    async def record_entry(self, entry: LedgerEntry) -> None:
        await self.conn.execute(
            """
            INSERT INTO ledger_entries (
                id, account_id, currency, amount, balance_after, reason, reference, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            entry.id,
            entry.account_id,
            entry.currency.value,
            entry.amount,
            entry.balance_after,
            entry.reason,
            entry.reference,
            entry.created_at,
        )

    async def get_plan(self, plan_id: int, for_update: bool = False) -> Optional[Plan]:
        query = "SELECT * FROM plans WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self.conn.fetchrow(query, plan_id)
        return _plan_from_row(row) if row else None

    async def set_stock(self, plan_id: int, stock: int) -> None:
        await self.conn.execute("UPDATE plans SET stock = $2 WHERE id = $1", plan_id, stock)

    async def count_live_leases(self, plan_id: int) -> int:
        return await self.conn.fetchval(
            """
            SELECT
                (SELECT COUNT(*) FROM instances
                 WHERE account_id = $1 AND plan_id = $2 AND status <> 'deleted')
              + (SELECT COUNT(*) FROM purchase_holds
                 WHERE account_id = $1 AND plan_id = $2)
            """,
            self.account_id,
            plan_id,
        )

    async def add_hold(self, plan_id: int) -> str:
        hold_id = str(uuid.uuid4())
        await self.conn.execute(
            "INSERT INTO purchase_holds (id, account_id, plan_id) VALUES ($1, $2, $3)",
            hold_id,
            self.account_id,
            plan_id,
        )
        return hold_id

    async def release_hold(self, hold_id: str) -> None:
        await self.conn.execute("DELETE FROM purchase_holds WHERE id = $1", hold_id)

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        row = await self.conn.fetchrow("SELECT * FROM instances WHERE id = $1", instance_id)
        return _instance_from_row(row) if row else None

    async def insert_instance(self, instance: Instance) -> None:
        await self.conn.execute(
            """
            INSERT INTO instances (
                id, account_id, plan_id, currency, name, external_id, host_id,
                status, expires_at, suspended_at, grace_expires_at, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            """,
            instance.id,
            instance.account_id,
            instance.plan_id,
            instance.currency.value,
            instance.name,
            instance.external_id,
            instance.host_id,
            instance.status.value,
            instance.expires_at,
            instance.suspended_at,
            instance.grace_expires_at,
            instance.created_at,
        )

    async def update_instance(self, instance: Instance) -> None:
        await self.conn.execute(
            """
            UPDATE instances SET
                status = $2,
                expires_at = $3,
                suspended_at = $4,
                grace_expires_at = $5
            WHERE id = $1
            """,
            instance.id,
            instance.status.value,
            instance.expires_at,
            instance.suspended_at,
            instance.grace_expires_at,
        )


class PostgresStore(RecordStore):
    """Record store on an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @asynccontextmanager
    async def unit_of_work(self, account_id: str) -> AsyncIterator[PostgresUnitOfWork]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                uow = PostgresUnitOfWork(conn, account_id)
                await uow.lock_account()
                yield uow

    # =========================================
    # SEEDING / ADMINISTRATION
    # =========================================

    async def save_account(self, account: Account) -> None:
        await self.pool.execute(
            """
            INSERT INTO accounts (id, coin_balance, real_balance, panel_user_id)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET
                coin_balance = EXCLUDED.coin_balance,
                real_balance = EXCLUDED.real_balance,
                panel_user_id = EXCLUDED.panel_user_id
            """,
            account.id,
            account.coin_balance,
            account.real_balance,
            account.panel_user_id,
        )

    async def save_plan(self, plan: Plan) -> None:
        await self.pool.execute(
            """
            INSERT INTO plans (
                id, name, currency, price, ram_gb, cpu, storage_gb,
                duration_type, duration_days, limited_stock, stock, one_per_account
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                currency = EXCLUDED.currency,
                price = EXCLUDED.price,
                ram_gb = EXCLUDED.ram_gb,
                cpu = EXCLUDED.cpu,
                storage_gb = EXCLUDED.storage_gb,
                duration_type = EXCLUDED.duration_type,
                duration_days = EXCLUDED.duration_days,
                limited_stock = EXCLUDED.limited_stock,
                stock = EXCLUDED.stock,
                one_per_account = EXCLUDED.one_per_account
            """,
            plan.id,
            plan.name,
            plan.currency.value,
            plan.price,
            plan.ram_gb,
            plan.cpu,
            plan.storage_gb,
            plan.duration_type.value,
            plan.duration_days,
            plan.limited_stock,
            plan.stock,
            plan.one_per_account,
        )

    # =========================================
    # PLAIN READS (no serialization)
    # =========================================

    async def get_account(self, account_id: str) -> Optional[Account]:
        row = await self.pool.fetchrow("SELECT * FROM accounts WHERE id = $1", account_id)
        return _account_from_row(row) if row else None

    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        row = await self.pool.fetchrow("SELECT * FROM plans WHERE id = $1", plan_id)
        return _plan_from_row(row) if row else None

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        row = await self.pool.fetchrow("SELECT * FROM instances WHERE id = $1", instance_id)
        return _instance_from_row(row) if row else None

    async def list_account_instances(self, account_id: str) -> List[Instance]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM instances
            WHERE account_id = $1 AND status <> 'deleted'
            ORDER BY created_at DESC
            """,
            account_id,
        )
        return [_instance_from_row(row) for row in rows]

    async def list_due_for_renewal(self, now: datetime) -> List[Instance]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM instances
            WHERE status = 'active' AND expires_at IS NOT NULL AND expires_at <= $1
            ORDER BY expires_at
            """,
            now,
        )
        return [_instance_from_row(row) for row in rows]

    async def list_grace_expired(self, now: datetime) -> List[Instance]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM instances
            WHERE status = 'suspended' AND grace_expires_at IS NOT NULL AND grace_expires_at <= $1
            ORDER BY grace_expires_at
            """,
            now,
        )
        return [_instance_from_row(row) for row in rows]

    async def list_expiring(self, before: datetime) -> List[Instance]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM instances
            WHERE status = 'active' AND expires_at IS NOT NULL AND expires_at <= $1
            ORDER BY expires_at
            """,
            before,
        )
        return [_instance_from_row(row) for row in rows]

    async def list_suspended(self) -> List[Instance]:
        rows = await self.pool.fetch(
            "SELECT * FROM instances WHERE status = 'suspended' ORDER BY suspended_at"
        )
        return [_instance_from_row(row) for row in rows]

    async def list_entries(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM ledger_entries
            WHERE account_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            account_id,
            limit,
        )
        return [_entry_from_row(row) for row in rows]

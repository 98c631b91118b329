"""
In-memory stand-ins for the asyncpg pool, connection and transaction.

``FakeAccountStore`` holds committed balances plus a version per row.
A transaction keeps its writes private and, on commit, fails with a real
``asyncpg`` serialization error when any row it touched was committed by
someone else in the meantime, the way an OCC datastore does.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal

from asyncpg.exceptions import SerializationError


class FakeAccountStore:
    def __init__(self, balances=None):
        balances = balances or {}
        self.balances = {key: Decimal(str(value)) for key, value in balances.items()}
        self.versions = {key: 0 for key in self.balances}
        self.statements = []
        self.commits = 0
        self.rollbacks = 0
        # serialization failures to raise on the next commits, regardless of versions
        self.forced_conflicts = 0
        self.commit_error = None
        self.statement_error = None
        # consumed one per statement, in order; None lets that statement run
        self.statement_errors = []
        self.plan_rows = []
        self.query_rows = []

    def total(self, *keys):
        return sum(self.balances[key] for key in keys)


class FakeTransaction:
    def __init__(self, conn, isolation=None):
        self.conn = conn
        self.store = conn.store
        self.isolation = isolation
        self.writes = {}
        self.read_versions = {}

    def read(self, account_id):
        if account_id in self.writes:
            return self.writes[account_id]
        if account_id not in self.store.balances:
            return None
        self.read_versions.setdefault(account_id, self.store.versions[account_id])
        return self.store.balances[account_id]

    def write(self, account_id, balance):
        self.writes[account_id] = balance

    async def __aenter__(self):
        self.conn.txn = self
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.txn = None
        if exc_type is not None:
            self.store.rollbacks += 1
            return False
        await self.commit()
        return False

    async def commit(self):
        await asyncio.sleep(0)
        store = self.store
        if store.forced_conflicts:
            store.forced_conflicts -= 1
            store.rollbacks += 1
            raise SerializationError("change conflicts with another transaction, please retry: (OC000)")
        if store.commit_error is not None:
            store.rollbacks += 1
            raise store.commit_error
        for account_id, version in self.read_versions.items():
            if store.versions[account_id] != version:
                store.rollbacks += 1
                raise SerializationError("change conflicts with another transaction, please retry: (OC000)")
        for account_id, balance in self.writes.items():
            store.balances[account_id] = balance
            store.versions[account_id] += 1
        store.commits += 1


class FakeConnection:
    def __init__(self, store: FakeAccountStore):
        self.store = store
        self.txn = None

    def transaction(self, isolation=None, **kwargs):
        return FakeTransaction(self, isolation)

    def _read(self, account_id):
        if self.txn is not None:
            return self.txn.read(account_id)
        return self.store.balances.get(account_id)

    async def _statement(self, sql):
        await asyncio.sleep(0)
        self.store.statements.append(sql)
        if self.store.statement_errors:
            error = self.store.statement_errors.pop(0)
            if error is not None:
                raise error
        if self.store.statement_error is not None:
            raise self.store.statement_error

    async def fetchrow(self, sql, *args):
        await self._statement(sql)
        if "balance - $1" in sql and "RETURNING balance" in sql:
            amount, account_id = args
            current = self._read(account_id)
            if current is None:
                return None
            new_balance = current - amount
            self.txn.write(account_id, new_balance)
            return {"balance": new_balance}
        if sql.startswith("SELECT balance"):
            (account_id,) = args
            balance = self._read(account_id)
            return None if balance is None else {"balance": balance}
        raise AssertionError(f"unexpected fetchrow: {sql}")

    async def execute(self, sql, *args):
        await self._statement(sql)
        if "balance + $1" in sql:
            amount, account_id = args
            current = self._read(account_id)
            if current is None:
                return "UPDATE 0"
            self.txn.write(account_id, current + amount)
            return "UPDATE 1"
        return "OK"

    async def fetch(self, sql, *args):
        await self._statement(sql)
        if sql.startswith("EXPLAIN"):
            return self.store.plan_rows
        if sql.startswith("INSERT INTO"):
            if len(args) == 2:
                balance, count = args
                ids = [uuid.uuid4() for _ in range(count)]
            else:
                balance, first, last = args
                ids = list(range(first, last + 1))
            for account_id in ids:
                self.store.balances[account_id] = Decimal(balance)
                self.store.versions[account_id] = 0
            return [{"id": account_id} for account_id in ids]
        return self.store.query_rows


class FakeDatabase:
    """Matches the ``Database`` surface the services use."""

    def __init__(self, store: FakeAccountStore):
        self.store = store
        self.connections_borrowed = 0
        self.closed = False

    @asynccontextmanager
    async def get_connection(self):
        self.connections_borrowed += 1
        yield FakeConnection(self.store)

    async def close_pool(self):
        self.closed = True

"""
Bulk account loading.

Creates the accounts table and fills it in batches through
``generate_series``. UUID ids are assigned by the database; integer ids are
numbered 1..N. DSQL caps the rows a single transaction may write, so keep
``batch_size`` at a few thousand or less.
"""

import asyncio
from decimal import Decimal
from typing import List

from .. import config
from ..database import DRIVER_ERRORS, Database, validate_identifier, wrap_error
from ..exceptions import ConfigurationError
from ..logger import get_logger
from ..models import AccountId

logger = get_logger(__name__)

ID_TYPES = ("int", "uuid")


class AccountSeeder:
    def __init__(
        self,
        database: Database,
        table: str = config.ACCOUNTS_TABLE,
        id_type: str = config.ACCOUNT_ID_TYPE,
    ):
        if id_type not in ID_TYPES:
            raise ConfigurationError(f"Unknown account id type: {id_type!r}")
        self.database = database
        self.table = validate_identifier(table)
        self.id_type = id_type

    def create_table_sql(self) -> str:
        if self.id_type == "uuid":
            columns = "id UUID PRIMARY KEY DEFAULT gen_random_uuid()"
        else:
            columns = "id INTEGER PRIMARY KEY"
        return f"CREATE TABLE {self.table} ({columns}, balance DECIMAL NOT NULL)"

    async def create_table(self):
        """Drop and recreate the accounts table."""
        async with self.database.get_connection() as conn:
            try:
                await conn.execute(f"DROP TABLE IF EXISTS {self.table}")
                await conn.execute(self.create_table_sql())
            except DRIVER_ERRORS as e:
                raise wrap_error(e) from e
        logger.info("Created table %s (%s ids)", self.table, self.id_type)

    async def insert_batch(self, batch_number: int, batch_size: int, balance: Decimal) -> List[AccountId]:
        """Insert one batch in its own transaction and return the new ids."""
        async with self.database.get_connection() as conn:
            try:
                async with conn.transaction():
                    if self.id_type == "uuid":
                        rows = await conn.fetch(
                            f"INSERT INTO {self.table} (balance) "
                            f"SELECT $1::decimal FROM generate_series(1, $2) RETURNING id",
                            balance, batch_size
                        )
                    else:
                        first = (batch_number - 1) * batch_size + 1
                        rows = await conn.fetch(
                            f"INSERT INTO {self.table} (id, balance) "
                            f"SELECT g, $1::decimal FROM generate_series($2::int, $3::int) AS g RETURNING id",
                            balance, first, first + batch_size - 1
                        )
            except DRIVER_ERRORS as e:
                raise wrap_error(e) from e
        return [row["id"] for row in rows]

    async def seed(
        self,
        batches: int = 1000,
        batch_size: int = 1000,
        balance: Decimal = Decimal("100"),
        workers: int = 1,
        create: bool = True,
    ) -> List[AccountId]:
        """Load ``batches * batch_size`` accounts using ``workers`` concurrent connections."""
        if batches < 1 or batch_size < 1 or workers < 1:
            raise ConfigurationError("batches, batch_size and workers must be positive")
        if create:
            await self.create_table()

        # split batch numbers 1..batches across workers, remainder to the last one
        per_worker, remainder = divmod(batches, workers)
        ranges = []
        start = 1
        for worker_id in range(1, workers + 1):
            count = per_worker + (remainder if worker_id == workers else 0)
            ranges.append((worker_id, start, start + count - 1))
            start += count

        results = await asyncio.gather(
            *(self._worker(worker_id, first, last, batches, batch_size, balance)
              for worker_id, first, last in ranges)
        )

        ids = [account_id for worker_ids in results for account_id in worker_ids]
        logger.info("Seeded %d accounts into %s", len(ids), self.table)
        return ids

    async def _worker(self, worker_id: int, first: int, last: int, total: int, batch_size: int, balance: Decimal):
        ids = []
        for batch_number in range(first, last + 1):
            ids.extend(await self.insert_batch(batch_number, batch_size, balance))
            logger.info("[Worker %d] Transaction %d/%d completed", worker_id, batch_number, total)
        return ids

"""
Index tuning walkthrough on a wide accounts table.

``setup`` loads 5000 random rows behind a deliberately weak index on
``account_type``; ``query`` shows the plan and timing of a metadata lookup;
``optimize`` adds a composite and a covering index; ``query_optimized`` runs
the same lookup again for comparison. DSQL builds indexes asynchronously
(``CREATE INDEX ASYNC``), so the new plan only shows up once the index job
has finished.
"""

import time
from typing import Awaitable, Callable, Dict

from ..database import DRIVER_ERRORS, Database, wrap_error
from ..exceptions import InvalidRequest
from ..logger import get_logger
from ..models import QueryLabRequest, QueryLabResponse

logger = get_logger(__name__)

TABLE = "accounts7"

DEFAULT_METADATA_KEY = "account_tier_1"
DEFAULT_ACCOUNT_TYPE = "savings"
DEFAULT_REGION_CODE = "US"
DEFAULT_STATUS = "active"

CREATE_TABLE_SQL = f"""
    CREATE TABLE {TABLE} (
        id INT,
        account_type VARCHAR(20),
        region_code CHAR(2),
        status VARCHAR(10),
        created_at TIMESTAMP DEFAULT NOW(),
        balance DECIMAL(10,2),
        metadata_key VARCHAR(50),
        metadata_value TEXT,
        PRIMARY KEY (id, created_at)
    )
"""

# $1 is the id offset of the batch
INSERT_BATCH_SQL = f"""
    INSERT INTO {TABLE} (id, account_type, region_code, status, created_at, balance, metadata_key, metadata_value)
    SELECT
        generate_series + $1::int,
        CASE WHEN random() < 0.8 THEN 'savings' ELSE 'checking' END,
        CASE floor(random() * 4)::int
            WHEN 0 THEN 'US'
            WHEN 1 THEN 'UK'
            WHEN 2 THEN 'DE'
            ELSE 'FR'
        END,
        CASE WHEN random() < 0.9 THEN 'active' ELSE 'inactive' END,
        TIMESTAMP '2023-01-01 00:00:00' + (random() * INTERVAL '365 days'),
        (random() * 10000)::decimal(10,2),
        'account_tier_' || (floor(random() * 5) + 1)::text,
        'tier_' || (floor(random() * 5) + 1)::text || '_metadata'
    FROM generate_series(1, 2500)
"""

LOOKUP_SQL = f"""
    SELECT $1::text AS metadata_key, metadata_value
    FROM {TABLE}
    WHERE account_type = $2
      AND region_code = $3
      AND status = $4
      AND metadata_key = $1
      AND created_at <= CURRENT_TIMESTAMP
      AND created_at > CURRENT_TIMESTAMP - INTERVAL '1 year'
"""

SETUP_INDEX = f"CREATE INDEX ASYNC idx_{TABLE}_type ON {TABLE}(account_type)"
OPTIMIZE_INDEXES = (
    f"CREATE INDEX ASYNC idx_{TABLE}_metadata ON {TABLE}(metadata_key, account_type)",
    f"CREATE INDEX ASYNC idx_{TABLE}_metadata_covering ON {TABLE}(metadata_key, account_type) "
    f"INCLUDE (region_code, status, created_at, metadata_value)",
)

BATCH_OFFSETS = (0, 2500)


class QueryLabService:
    def __init__(self, database: Database):
        self.database = database
        self._operations: Dict[str, Callable[[QueryLabRequest], Awaitable[QueryLabResponse]]] = {
            "setup": self.setup,
            "query": self.query,
            "optimize": self.optimize,
            "query_optimized": self.query,
        }

    @property
    def operations(self):
        return tuple(self._operations)

    async def run(self, request: QueryLabRequest) -> QueryLabResponse:
        """Dispatch ``request.operation``."""
        operation = self._operations.get(request.operation)
        if operation is None:
            raise InvalidRequest(f"Unknown operation: {request.operation}")
        try:
            return await operation(request)
        except DRIVER_ERRORS as e:
            logger.error("Query lab %s failed: %s", request.operation, e)
            raise wrap_error(e) from e

    async def setup(self, request: QueryLabRequest) -> QueryLabResponse:
        async with self.database.get_connection() as conn:
            await conn.execute(f"DROP TABLE IF EXISTS {TABLE} CASCADE")
            await conn.execute(CREATE_TABLE_SQL)
            await conn.execute(SETUP_INDEX)
            for offset in BATCH_OFFSETS:
                await conn.execute(INSERT_BATCH_SQL, offset)

        return QueryLabResponse(
            operation=request.operation,
            message="Database setup completed with 5000 rows and suboptimal index",
        )

    async def query(self, request: QueryLabRequest) -> QueryLabResponse:
        args = (
            request.metadata_key or DEFAULT_METADATA_KEY,
            request.account_type or DEFAULT_ACCOUNT_TYPE,
            request.region_code or DEFAULT_REGION_CODE,
            request.status or DEFAULT_STATUS,
        )

        start = time.perf_counter()
        async with self.database.get_connection() as conn:
            plan_rows = await conn.fetch("EXPLAIN ANALYZE " + LOOKUP_SQL, *args)
            rows = await conn.fetch(LOOKUP_SQL, *args)
        execution_time_ms = (time.perf_counter() - start) * 1000

        return QueryLabResponse(
            operation=request.operation,
            execution_time_ms=round(execution_time_ms, 3),
            rows_returned=len(rows),
            query_plan="\n".join(row["QUERY PLAN"] for row in plan_rows),
        )

    async def optimize(self, request: QueryLabRequest) -> QueryLabResponse:
        async with self.database.get_connection() as conn:
            for statement in OPTIMIZE_INDEXES:
                await conn.execute(statement)

        return QueryLabResponse(
            operation=request.operation,
            message=(
                f"Optimization indexes created: idx_{TABLE}_metadata "
                f"and idx_{TABLE}_metadata_covering"
            ),
        )

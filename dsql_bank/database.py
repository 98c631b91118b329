import asyncio
import re
from contextlib import asynccontextmanager
from enum import Enum
from typing import Callable, Optional, Union

import asyncpg

from . import config
from .auth import TokenGenerator
from .exceptions import ConfigurationError, ConflictError, ConnectivityError, DatastoreError
from .logger import get_logger

logger = get_logger(__name__)

# SQLSTATE raised when optimistic concurrency control aborts a transaction
SERIALIZATION_FAILURE = "40001"

# Exceptions the driver and the network path can raise during a statement
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str) -> str:
    """Table names are formatted into SQL text, so only plain identifiers pass."""
    if not _IDENTIFIER.match(name):
        raise ConfigurationError(f"Invalid table name: {name!r}")
    return name


class DatastoreFailure(Enum):
    CONFLICT = "conflict"
    CONNECTIVITY = "connectivity"
    OTHER = "other"


def classify_error(exc: BaseException) -> DatastoreFailure:
    """Decide once, at the driver boundary, what kind of failure ``exc`` is."""
    if isinstance(exc, asyncpg.PostgresError):
        sqlstate = exc.sqlstate or ""
        if sqlstate == SERIALIZATION_FAILURE:
            return DatastoreFailure.CONFLICT
        # class 08 is connection exceptions, 57P03 is cannot_connect_now
        if sqlstate.startswith("08") or sqlstate == "57P03":
            return DatastoreFailure.CONNECTIVITY
        return DatastoreFailure.OTHER
    if isinstance(exc, (asyncpg.exceptions.ConnectionDoesNotExistError, OSError, asyncio.TimeoutError)):
        return DatastoreFailure.CONNECTIVITY
    return DatastoreFailure.OTHER


def wrap_error(exc: BaseException) -> DatastoreError:
    """Turn a driver exception into the matching ``DatastoreError``."""
    sqlstate = getattr(exc, "sqlstate", None)
    message = str(exc) or exc.__class__.__name__
    failure = classify_error(exc)
    if failure is DatastoreFailure.CONFLICT:
        return ConflictError(message, sqlstate=sqlstate)
    if failure is DatastoreFailure.CONNECTIVITY:
        return ConnectivityError(message, sqlstate=sqlstate)
    return DatastoreError(message, sqlstate=sqlstate)


class Database:
    """Lazily created asyncpg pool, shared by every operation in the process."""

    def __init__(
        self,
        dsn: Optional[str] = None,
        host: Optional[str] = None,
        port: int = config.DB_PORT,
        user: str = config.DB_USER,
        database: str = config.DB_NAME,
        password: Union[str, Callable[[], str], None] = None,
        ssl: Optional[str] = config.DB_SSL,
        min_size: int = config.POOL_MIN_SIZE,
        max_size: int = config.POOL_MAX_SIZE,
        idle_timeout: float = config.POOL_IDLE_TIMEOUT,
    ):
        self.dsn = dsn
        self.host = host
        self.port = port
        self.user = user
        self.database = database
        self.password = password
        self.ssl = ssl
        self.min_size = min_size
        self.max_size = max_size
        self.idle_timeout = idle_timeout
        self.pool: Optional[asyncpg.Pool] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls) -> "Database":
        """Build from environment settings: plain DSN, or DSQL endpoint with IAM tokens."""
        if config.DATABASE_URL:
            return cls(dsn=config.DATABASE_URL, ssl=None)
        tokens = TokenGenerator(config.CLUSTER_ENDPOINT, config.REGION, config.DB_USER)
        return cls(host=config.CLUSTER_ENDPOINT, password=tokens)

    async def init_pool(self):
        """Create the pool on first use; later calls are no-ops."""
        async with self._lock:
            if self.pool is not None:
                return
            try:
                self.pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    host=self.host,
                    port=self.port,
                    user=self.user,
                    database=self.database,
                    password=self.password,
                    ssl=self.ssl,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    max_inactive_connection_lifetime=self.idle_timeout,
                )
            except DRIVER_ERRORS as e:
                logger.error("Failed to initialize connection pool: %s", e)
                raise wrap_error(e) from e
            logger.info("Connection pool initialized (%s)", self.host or "dsn")

    async def close_pool(self):
        async with self._lock:
            if self.pool:
                await self.pool.close()
                self.pool = None
                logger.info("Connection pool closed")

    @asynccontextmanager
    async def get_connection(self):
        """Borrow one connection; it belongs to the caller until the block exits."""
        if not self.pool:
            await self.init_pool()
        try:
            conn = await self.pool.acquire()
        except DRIVER_ERRORS as e:
            raise wrap_error(e) from e
        try:
            yield conn
        finally:
            await self.pool.release(conn)

"""
Balance transfer under optimistic concurrency control.

Each attempt is one transaction: debit the payer (returning the new balance),
reject a negative result, credit the payee, commit. When the datastore aborts
the transaction with a serialization failure the whole attempt runs again
immediately, on the same borrowed connection, with nothing carried over.

There is no attempt cap unless ``RetryPolicy.max_attempts`` is set; the
caller's own deadline (the Lambda timeout, the HTTP client timeout) is what
bounds a transfer that keeps conflicting.
"""

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from .. import config
from ..database import DRIVER_ERRORS, Database, validate_identifier, wrap_error
from ..exceptions import (
    BankError,
    ConflictError,
    InsufficientBalance,
    InvalidRequest,
    PayeeNotFound,
    PayerNotFound,
)
from ..logger import get_logger
from ..models import TransferRequest, TransferResponse

logger = get_logger(__name__)


class AttemptState(Enum):
    ATTEMPTING = "attempting"
    DONE = "done"


class AttemptOutcome(Enum):
    COMMITTED = "committed"
    CONFLICT = "conflict"
    FAILED = "failed"


# ATTEMPTING --committed--> DONE (success)
# ATTEMPTING --conflict---> ATTEMPTING
# ATTEMPTING --failed-----> DONE (failure)
TRANSITIONS = {
    AttemptOutcome.COMMITTED: AttemptState.DONE,
    AttemptOutcome.CONFLICT: AttemptState.ATTEMPTING,
    AttemptOutcome.FAILED: AttemptState.DONE,
}


@dataclass(frozen=True)
class RetryPolicy:
    """``max_attempts=None`` retries conflicts until the transfer commits."""

    max_attempts: Optional[int] = None

    def __post_init__(self):
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def allows_another(self, attempts: int) -> bool:
        return self.max_attempts is None or attempts < self.max_attempts


UNBOUNDED = RetryPolicy()
SINGLE_ATTEMPT = RetryPolicy(max_attempts=1)


@dataclass(frozen=True)
class TransferResult:
    payer_balance: Decimal
    elapsed: float
    attempts: int

    @property
    def transaction_time(self) -> str:
        return f"{self.elapsed * 1000:.3f}ms"

    def to_response(self) -> TransferResponse:
        return TransferResponse(
            payer_balance=str(self.payer_balance),
            transaction_time=self.transaction_time,
            attempts=self.attempts,
        )


def rows_affected(status: str) -> int:
    """Row count from a command tag such as ``"UPDATE 1"``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class OCCTransferService:
    def __init__(
        self,
        database: Database,
        table: str = config.ACCOUNTS_TABLE,
        retry_policy: Optional[RetryPolicy] = None,
        isolation: Optional[str] = config.TRANSFER_ISOLATION,
    ):
        self.database = database
        self.table = validate_identifier(table)
        if retry_policy is None:
            retry_policy = RetryPolicy(config.TRANSFER_MAX_ATTEMPTS)
        self.retry_policy = retry_policy
        self.isolation = isolation
        self._debit_sql = f"UPDATE {self.table} SET balance = balance - $1 WHERE id = $2 RETURNING balance"
        self._credit_sql = f"UPDATE {self.table} SET balance = balance + $1 WHERE id = $2"

    async def transfer(self, request: TransferRequest) -> TransferResult:
        """Move ``request.amount`` from payer to payee, retrying on OCC conflicts."""
        if request.payer_id == request.payee_id:
            raise InvalidRequest("Payer and payee must be different accounts")
        if request.amount < 0:
            raise InvalidRequest(f"Transfer amount must not be negative: {request.amount}")

        start = time.perf_counter()
        attempts = 0
        state = AttemptState.ATTEMPTING
        payer_balance: Optional[Decimal] = None
        failure: Optional[BankError] = None

        async with self.database.get_connection() as conn:
            while state is AttemptState.ATTEMPTING:
                attempts += 1
                logger.debug("Transfer %s -> %s attempt %d", request.payer_id, request.payee_id, attempts)
                outcome, payer_balance, failure = await self._run_attempt(conn, request)

                if outcome is AttemptOutcome.CONFLICT:
                    if not self.retry_policy.allows_another(attempts):
                        logger.warning("Transfer gave up after %d conflicting attempts", attempts)
                        outcome = AttemptOutcome.FAILED
                    else:
                        logger.warning("OCC conflict on attempt %d, retrying: %s", attempts, failure)

                state = TRANSITIONS[outcome]

        if outcome is AttemptOutcome.FAILED:
            raise failure

        result = TransferResult(
            payer_balance=payer_balance,
            elapsed=time.perf_counter() - start,
            attempts=attempts,
        )
        logger.info(
            "Transferred %s from %s to %s in %s (%d attempts)",
            request.amount, request.payer_id, request.payee_id, result.transaction_time, attempts,
        )
        return result

    async def _run_attempt(
        self, conn, request: TransferRequest
    ) -> Tuple[AttemptOutcome, Optional[Decimal], Optional[BankError]]:
        """One transaction lifecycle, reported as an outcome instead of raised."""
        try:
            payer_balance = await self._attempt_transfer(conn, request)
        except ConflictError as e:
            return AttemptOutcome.CONFLICT, None, e
        except BankError as e:
            return AttemptOutcome.FAILED, None, e
        return AttemptOutcome.COMMITTED, payer_balance, None

    async def _attempt_transfer(self, conn, request: TransferRequest) -> Decimal:
        try:
            # commit happens on block exit, any exception inside rolls back
            async with conn.transaction(isolation=self.isolation):
                return await self.execute_transfer(conn, request)
        except DRIVER_ERRORS as e:
            raise wrap_error(e) from e

    async def execute_transfer(self, conn, request: TransferRequest) -> Decimal:
        """Debit payer and credit payee inside the caller's transaction."""
        row = await conn.fetchrow(self._debit_sql, request.amount, request.payer_id)
        if row is None:
            raise PayerNotFound()

        payer_balance = row["balance"]
        if payer_balance < 0:
            raise InsufficientBalance(payer_balance)

        status = await conn.execute(self._credit_sql, request.amount, request.payee_id)
        if rows_affected(status) != 1:
            raise PayeeNotFound()

        return payer_balance

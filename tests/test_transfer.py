"""Transfer executor: validation, balance arithmetic, rollback and OCC retry."""

import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest
from asyncpg.exceptions import ConnectionDoesNotExistError, SerializationError, UndefinedTableError

from dsql_bank.exceptions import (
    ConfigurationError,
    ConflictError,
    ConnectivityError,
    DatastoreError,
    InsufficientBalance,
    InvalidRequest,
    PayeeNotFound,
    PayerNotFound,
)
from dsql_bank.models import TransferRequest
from dsql_bank.scenarios.transfer import (
    SINGLE_ATTEMPT,
    TRANSITIONS,
    UNBOUNDED,
    AttemptOutcome,
    AttemptState,
    OCCTransferService,
    RetryPolicy,
    TransferResult,
    rows_affected,
)
from fakes import FakeAccountStore, FakeDatabase


def make_request(payer=1, payee=2, amount="10"):
    return TransferRequest(payer_id=payer, payee_id=payee, amount=Decimal(amount))


@pytest.fixture
def service(database):
    return OCCTransferService(database, retry_policy=UNBOUNDED)


@pytest.mark.asyncio
async def test_uncontended_transfer(service, store):
    result = await service.transfer(make_request(amount="10"))

    assert result.payer_balance == Decimal("90")
    assert result.attempts == 1
    assert store.balances[1] == Decimal("90")
    assert store.balances[2] == Decimal("60")
    assert store.total(1, 2) == Decimal("150")

    response = result.to_response()
    assert response.payer_balance == "90"
    assert response.attempts == 1
    assert response.transaction_time.endswith("ms")


@pytest.mark.asyncio
async def test_same_account_rejected_without_database_access(service, database, store):
    with pytest.raises(InvalidRequest, match="Payer and payee must be different accounts"):
        await service.transfer(make_request(payer=1, payee=1))

    assert database.connections_borrowed == 0
    assert store.statements == []
    assert store.commits == 0


@pytest.mark.asyncio
async def test_negative_amount_rejected(service, database):
    with pytest.raises(InvalidRequest):
        await service.transfer(make_request(amount="-5"))
    assert database.connections_borrowed == 0


@pytest.mark.asyncio
async def test_missing_payer(service, store):
    with pytest.raises(PayerNotFound):
        await service.transfer(make_request(payer=99, payee=2))

    assert store.balances[2] == Decimal("50")
    assert store.commits == 0


@pytest.mark.asyncio
async def test_insufficient_balance_rolls_back(service, store):
    with pytest.raises(InsufficientBalance) as excinfo:
        await service.transfer(make_request(amount="200"))

    assert "Insufficient balance" in str(excinfo.value)
    assert excinfo.value.balance == Decimal("-100")
    assert store.balances[1] == Decimal("100")
    assert store.balances[2] == Decimal("50")
    assert store.rollbacks == 1
    assert store.commits == 0


@pytest.mark.asyncio
async def test_missing_payee_rolls_back_payer_debit(service, store):
    with pytest.raises(PayeeNotFound):
        await service.transfer(make_request(payer=1, payee=99))

    # the debit ran inside the transaction but was never committed
    assert any("balance - $1" in sql for sql in store.statements)
    assert store.balances[1] == Decimal("100")
    assert store.commits == 0


@pytest.mark.asyncio
async def test_entire_balance_can_be_moved(service, store):
    result = await service.transfer(make_request(amount="100"))

    assert result.payer_balance == Decimal("0")
    assert store.balances[2] == Decimal("150")


@pytest.mark.asyncio
async def test_conflicts_are_retried_until_commit(service, store):
    store.forced_conflicts = 3

    result = await service.transfer(make_request(amount="10"))

    assert result.attempts == 4
    assert store.commits == 1
    assert store.balances[1] == Decimal("90")
    assert store.total(1, 2) == Decimal("150")


@pytest.mark.asyncio
async def test_retry_reuses_the_borrowed_connection(service, database, store):
    store.forced_conflicts = 2

    await service.transfer(make_request())

    assert database.connections_borrowed == 1


@pytest.mark.asyncio
async def test_non_conflict_commit_error_is_not_retried(service, store):
    store.commit_error = ConnectionDoesNotExistError("connection was closed in the middle of operation")

    with pytest.raises(ConnectivityError):
        await service.transfer(make_request())

    assert len([sql for sql in store.statements if "balance - $1" in sql]) == 1
    assert store.balances[1] == Decimal("100")


@pytest.mark.asyncio
async def test_statement_error_surfaces_as_datastore_error(service, store):
    store.statement_error = UndefinedTableError('relation "accounts" does not exist')

    with pytest.raises(DatastoreError) as excinfo:
        await service.transfer(make_request())

    assert not isinstance(excinfo.value, ConflictError)
    assert excinfo.value.sqlstate == "42P01"


@pytest.mark.asyncio
async def test_single_attempt_policy_reports_conflict(database, store):
    service = OCCTransferService(database, retry_policy=SINGLE_ATTEMPT)
    store.forced_conflicts = 1

    with pytest.raises(ConflictError) as excinfo:
        await service.transfer(make_request())

    assert excinfo.value.sqlstate == "40001"
    assert store.balances[1] == Decimal("100")


@pytest.mark.asyncio
async def test_capped_policy_gives_up_after_max_attempts(database, store):
    service = OCCTransferService(database, retry_policy=RetryPolicy(max_attempts=3))
    store.forced_conflicts = 5

    with pytest.raises(ConflictError):
        await service.transfer(make_request())

    assert store.forced_conflicts == 2


@pytest.mark.asyncio
async def test_conflict_raised_by_a_statement_is_retried(service, store):
    store.statement_errors = [SerializationError("change conflicts with another transaction, please retry: (OC000)")]

    result = await service.transfer(make_request(amount="10"))

    assert result.attempts == 2
    assert store.rollbacks == 1
    assert store.commits == 1
    assert store.balances[1] == Decimal("90")
    assert store.balances[2] == Decimal("60")


@pytest.mark.asyncio
async def test_conflict_raised_by_the_credit_rolls_back_the_debit(service, store):
    store.statement_errors = [None, SerializationError("OC000")]

    result = await service.transfer(make_request(amount="10"))

    assert result.attempts == 2
    # debit, conflicting credit, then debit and credit again
    assert len(store.statements) == 4
    assert store.balances[1] == Decimal("90")
    assert store.total(1, 2) == Decimal("150")


@pytest.mark.asyncio
async def test_statement_conflict_with_single_attempt_is_reported(database, store):
    service = OCCTransferService(database, retry_policy=SINGLE_ATTEMPT)
    store.statement_errors = [SerializationError("OC000")]

    with pytest.raises(ConflictError):
        await service.transfer(make_request())

    assert store.balances[1] == Decimal("100")
    assert store.commits == 0


@pytest.mark.asyncio
async def test_uuid_account_ids():
    payer, payee = uuid4(), uuid4()
    store = FakeAccountStore({payer: "100", payee: "0"})
    service = OCCTransferService(FakeDatabase(store), table="accounts2", retry_policy=UNBOUNDED)

    result = await service.transfer(TransferRequest(payer_id=str(payer), payee_id=str(payee), amount="12.50"))

    assert result.payer_balance == Decimal("87.50")
    assert store.balances[payee] == Decimal("12.50")


@pytest.mark.asyncio
async def test_concurrent_transfers_preserve_totals():
    store = FakeAccountStore({1: "1000", 2: "1000", 3: "1000"})
    database = FakeDatabase(store)
    service = OCCTransferService(database, retry_policy=UNBOUNDED)
    pairs = [(1, 2), (2, 3), (3, 1), (1, 3), (2, 1)] * 6

    results = await asyncio.gather(
        *(service.transfer(make_request(payer, payee, "7")) for payer, payee in pairs)
    )

    assert len(results) == len(pairs)
    assert all(result.attempts >= 1 for result in results)
    assert store.total(1, 2, 3) == Decimal("3000")
    assert all(balance >= 0 for balance in store.balances.values())
    assert store.commits == len(pairs)
    # overlapping accounts under contention force some retries
    assert sum(result.attempts for result in results) > len(pairs)


@pytest.mark.asyncio
async def test_contention_raises_average_attempts():
    async def average_attempts(concurrent):
        store = FakeAccountStore({1: "1000", 2: "1000"})
        service = OCCTransferService(FakeDatabase(store), retry_policy=UNBOUNDED)
        if concurrent:
            results = await asyncio.gather(*(service.transfer(make_request(1, 2, "1")) for _ in range(10)))
        else:
            results = [await service.transfer(make_request(1, 2, "1")) for _ in range(10)]
        assert store.balances[1] == Decimal("990")
        assert store.total(1, 2) == Decimal("2000")
        return sum(result.attempts for result in results) / len(results)

    sequential = await average_attempts(concurrent=False)
    concurrent = await average_attempts(concurrent=True)

    assert sequential == 1
    assert concurrent > sequential


@pytest.mark.asyncio
async def test_concurrent_overdraft_never_goes_negative():
    store = FakeAccountStore({1: "5", 2: "0"})
    service = OCCTransferService(FakeDatabase(store), retry_policy=UNBOUNDED)

    outcomes = await asyncio.gather(
        *(service.transfer(make_request(1, 2, "1")) for _ in range(8)),
        return_exceptions=True,
    )

    successes = [o for o in outcomes if isinstance(o, TransferResult)]
    failures = [o for o in outcomes if not isinstance(o, TransferResult)]
    assert len(successes) == 5
    assert all(isinstance(f, InsufficientBalance) for f in failures)
    assert store.balances[1] == Decimal("0")
    assert store.balances[2] == Decimal("5")


def test_transition_table():
    assert TRANSITIONS[AttemptOutcome.COMMITTED] is AttemptState.DONE
    assert TRANSITIONS[AttemptOutcome.CONFLICT] is AttemptState.ATTEMPTING
    assert TRANSITIONS[AttemptOutcome.FAILED] is AttemptState.DONE


def test_retry_policy():
    assert UNBOUNDED.allows_another(10_000)
    assert not SINGLE_ATTEMPT.allows_another(1)
    assert RetryPolicy(max_attempts=3).allows_another(2)
    assert not RetryPolicy(max_attempts=3).allows_another(3)
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_rows_affected():
    assert rows_affected("UPDATE 1") == 1
    assert rows_affected("UPDATE 0") == 0
    assert rows_affected("garbage") == 0


def test_transaction_time_format():
    result = TransferResult(payer_balance=Decimal("1"), elapsed=0.0123456, attempts=1)
    assert result.transaction_time == "12.346ms"


def test_table_name_must_be_identifier(database):
    with pytest.raises(ConfigurationError):
        OCCTransferService(database, table="accounts; DROP TABLE accounts")


def test_serialization_error_is_conflict():
    # sanity check on the driver class the fake raises
    assert SerializationError.sqlstate == "40001"

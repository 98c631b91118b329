"""
AWS Lambda entry points.

An execution environment handles one invocation at a time and is reused for
later ones, so the runtime below (one event loop, one connection pool) is
built on the first invocation and kept until the environment shuts down.
Failures are raised; Lambda reports them as ``errorType``/``errorMessage``.
"""

import asyncio
import atexit
import functools
from typing import Optional

from pydantic import ValidationError

from .database import Database
from .exceptions import BankError, InvalidRequest
from .logger import get_logger
from .models import (
    BalanceRequest,
    BalanceResponse,
    GreetingRequest,
    GreetingResponse,
    QueryLabRequest,
    TransferRequest,
)
from .scenarios.balance import BalanceService
from .scenarios.greeting import greet
from .scenarios.query_lab import QueryLabService
from .scenarios.transfer import SINGLE_ATTEMPT, OCCTransferService

logger = get_logger(__name__)


class LambdaRuntime:
    """Event loop and Database owned by one execution environment."""

    def __init__(self, database: Optional[Database] = None):
        self.loop = asyncio.new_event_loop()
        self._database = database

    @property
    def database(self) -> Database:
        if self._database is None:
            self._database = Database.from_config()
        return self._database

    def run(self, coro):
        return self.loop.run_until_complete(coro)

    def close(self):
        if self.loop.is_closed():
            return
        if self._database is not None:
            self.run(self._database.close_pool())
        self.loop.close()


@functools.lru_cache(maxsize=None)
def get_runtime() -> LambdaRuntime:
    runtime = LambdaRuntime()
    atexit.register(runtime.close)
    return runtime


def _parse(model, event):
    try:
        return model.model_validate(event)
    except ValidationError as e:
        raise InvalidRequest(str(e)) from e


def lambda_entry(func):
    """Log failures before handing them back to the Lambda runtime."""

    @functools.wraps(func)
    def wrapper(event, context=None):
        try:
            return func(event, context)
        except BankError as e:
            logger.error("Error: %s: %s", e.error_type, e.message)
            raise

    return wrapper


@lambda_entry
def hello_handler(event, context=None):
    request = _parse(GreetingRequest, event)
    return GreetingResponse(greeting=greet(request.name)).model_dump()


@lambda_entry
def balance_handler(event, context=None):
    request = _parse(BalanceRequest, event)
    runtime = get_runtime()
    balance = runtime.run(BalanceService(runtime.database).get_balance(request.id))
    return BalanceResponse(balance=str(balance)).model_dump()


@lambda_entry
def single_transfer_handler(event, context=None):
    """Transfer in one transaction; an OCC conflict fails the invocation."""
    request = _parse(TransferRequest, event)
    runtime = get_runtime()
    service = OCCTransferService(runtime.database, retry_policy=SINGLE_ATTEMPT)
    return runtime.run(service.transfer(request)).to_response().model_dump()


@lambda_entry
def transfer_handler(event, context=None):
    """Transfer retried on OCC conflicts until it commits."""
    request = _parse(TransferRequest, event)
    runtime = get_runtime()
    service = OCCTransferService(runtime.database)
    return runtime.run(service.transfer(request)).to_response().model_dump()


@lambda_entry
def query_lab_handler(event, context=None):
    request = _parse(QueryLabRequest, event)
    runtime = get_runtime()
    response = runtime.run(QueryLabService(runtime.database).run(request))
    return response.model_dump(exclude_none=True)

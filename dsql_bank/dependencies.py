from fastapi import Depends, Request

from .database import Database
from .scenarios.balance import BalanceService
from .scenarios.query_lab import QueryLabService
from .scenarios.transfer import SINGLE_ATTEMPT, OCCTransferService


async def get_database(request: Request) -> Database:
    """The app's shared Database, created from the environment on first use.

    Runs on the event loop with no await between the check and the assignment,
    so concurrent first requests all get the same instance.
    """
    state = request.app.state
    if state.database is None:
        state.database = Database.from_config()
    return state.database


def get_transfer_service(database: Database = Depends(get_database)) -> OCCTransferService:
    return OCCTransferService(database)


def get_single_transfer_service(database: Database = Depends(get_database)) -> OCCTransferService:
    return OCCTransferService(database, retry_policy=SINGLE_ATTEMPT)


def get_balance_service(database: Database = Depends(get_database)) -> BalanceService:
    return BalanceService(database)


def get_query_lab_service(database: Database = Depends(get_database)) -> QueryLabService:
    return QueryLabService(database)

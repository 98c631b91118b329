from fastapi import APIRouter, Depends

from ..dependencies import get_balance_service
from ..models import BalanceResponse, GreetingResponse, parse_account_id
from ..scenarios.balance import BalanceService
from ..scenarios.greeting import greet

router = APIRouter(tags=["Accounts"])


@router.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
async def get_balance(account_id: str, service: BalanceService = Depends(get_balance_service)):
    """Current balance (integer or UUID id)"""
    balance = await service.get_balance(parse_account_id(account_id))
    return BalanceResponse(balance=str(balance))


@router.get("/hello/{name}", response_model=GreetingResponse)
async def hello(name: str):
    return GreetingResponse(greeting=greet(name))

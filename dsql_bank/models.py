from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

from pydantic import BaseModel

from .exceptions import InvalidRequest

# integer ids in "accounts", UUID ids in "accounts2"
AccountId = Union[int, UUID]


def parse_account_id(raw: str) -> AccountId:
    """Parse an id taken from a URL path or a text file."""
    raw = raw.strip()
    if raw.lstrip("-").isdigit():
        return int(raw)
    try:
        return UUID(raw)
    except ValueError:
        raise InvalidRequest(f"Invalid account id: {raw!r}") from None


class TransferRequest(BaseModel):
    payer_id: AccountId
    payee_id: AccountId
    amount: Decimal


class TransferResponse(BaseModel):
    payer_balance: str
    transaction_time: str
    attempts: int


class BalanceRequest(BaseModel):
    id: AccountId


class BalanceResponse(BaseModel):
    balance: str


class GreetingRequest(BaseModel):
    name: str


class GreetingResponse(BaseModel):
    greeting: str


class QueryLabRequest(BaseModel):
    operation: str
    metadata_key: Optional[str] = None
    account_type: Optional[str] = None
    region_code: Optional[str] = None
    status: Optional[str] = None


class QueryLabResponse(BaseModel):
    operation: str
    execution_time_ms: Optional[float] = None
    rows_returned: Optional[int] = None
    query_plan: Optional[str] = None
    message: Optional[str] = None

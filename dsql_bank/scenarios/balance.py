from decimal import Decimal

from .. import config
from ..database import DRIVER_ERRORS, Database, validate_identifier, wrap_error
from ..exceptions import AccountNotFound
from ..models import AccountId


class BalanceService:
    def __init__(self, database: Database, table: str = config.ACCOUNTS_TABLE):
        self.database = database
        self.table = validate_identifier(table)

    async def get_balance(self, account_id: AccountId) -> Decimal:
        """Current balance of one account."""
        async with self.database.get_connection() as conn:
            try:
                row = await conn.fetchrow(
                    f"SELECT balance FROM {self.table} WHERE id = $1",
                    account_id
                )
            except DRIVER_ERRORS as e:
                raise wrap_error(e) from e

        if row is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return row["balance"]

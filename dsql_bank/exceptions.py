"""
Error taxonomy for account operations.

Every failure surfaced to a caller is a ``BankError``. ``error_type`` is the
stable category name reported by the Lambda and HTTP triggers.
"""

from typing import Optional


class BankError(Exception):
    """Base class for all account operation failures."""

    error_type = "BankError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error_type": self.error_type, "message": self.message}


class ConfigurationError(BankError):
    error_type = "ConfigurationError"


class InvalidRequest(BankError):
    """Rejected before any database access."""

    error_type = "InvalidRequest"


class AccountNotFound(BankError):
    error_type = "AccountNotFound"


class PayerNotFound(AccountNotFound):
    error_type = "PayerNotFound"

    def __init__(self, message: str = "Payer account not found"):
        super().__init__(message)


class PayeeNotFound(AccountNotFound):
    error_type = "PayeeNotFound"

    def __init__(self, message: str = "Payee account not found"):
        super().__init__(message)


class InsufficientBalance(BankError):
    error_type = "InsufficientBalance"

    def __init__(self, balance):
        super().__init__(f"Insufficient balance: {balance}")
        self.balance = balance


class DatastoreError(BankError):
    """A failure reported by the database or the network path to it."""

    error_type = "DatastoreError"

    def __init__(self, message: str, sqlstate: Optional[str] = None):
        super().__init__(message)
        self.sqlstate = sqlstate


class ConflictError(DatastoreError):
    """Serialization failure under optimistic concurrency. Retryable."""

    error_type = "ConflictError"


class ConnectivityError(DatastoreError):
    error_type = "ConnectivityError"

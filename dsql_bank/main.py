from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .database import Database
from .exceptions import (
    AccountNotFound,
    BankError,
    ConflictError,
    ConnectivityError,
    InsufficientBalance,
    InvalidRequest,
)
from .logger import get_logger
from .views import accounts, query_lab, transfer

logger = get_logger(__name__)

# most specific first
STATUS_CODES = (
    (InvalidRequest, 400),
    (AccountNotFound, 404),
    (InsufficientBalance, 409),
    (ConflictError, 409),
    (ConnectivityError, 503),
)


def status_for(error: BankError) -> int:
    for error_class, status_code in STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


async def bank_error_handler(request: Request, exc: BankError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(database: Optional[Database] = None) -> FastAPI:
    """Build the HTTP app. Without ``database`` one is created from the environment on first request."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.database is not None:
            await app.state.database.close_pool()

    app = FastAPI(
        title="DSQL bank - serverless transfer chapters",
        description="Token authentication, connection reuse, OCC retry and index tuning against Aurora DSQL",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.database = database

    app.include_router(transfer.router)
    app.include_router(accounts.router)
    app.include_router(query_lab.router)
    app.add_exception_handler(BankError, bank_error_handler)

    @app.get("/")
    async def root():
        return {
            "message": "DSQL bank - serverless transfer chapters",
            "version": "1.0.0",
            "available_methods": [
                "/hello/{name} - greeting",
                "/accounts/{id}/balance - balance lookup",
                "/transfer/single - transfer in a single transaction",
                "/transfer - transfer with OCC retry",
                "/query-lab/{operation} - index tuning (setup, query, optimize, query_optimized)",
            ],
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()

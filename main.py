from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Awaitable, Optional, TypeVar
import logging
import structlog
import time
from contextlib import asynccontextmanager

from models import (
    AmountRequest,
    ApiResponse,
    BalanceData,
    ErrorResponse,
    HealthResponse,
    TransferRequest,
)
from services import LedgerService, get_ledger_service
from queries import AccountQueryService, get_query_service
from repositories import get_account_repository, get_transaction_repository, get_transaction_manager
from exceptions import LedgerError, StoreError
from config import Settings, get_settings

T = TypeVar("T")


def configure_logging(settings: Settings) -> None:
    """Configure structured logging on top of stdlib logging."""
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.log_format == "text"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Banking Ledger API", version=settings.app_version)
    yield
    # Shutdown
    logger.info("Shutting down Banking Ledger API")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Deposits, withdrawals and atomic transfers over IBAN-addressed accounts",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Single CORS policy, driven by configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None,
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4),
    )

    return response


# Dependency injection
def get_ledger(
    account_repo=Depends(get_account_repository),
    transaction_repo=Depends(get_transaction_repository),
    transaction_manager=Depends(get_transaction_manager),
    settings: Settings = Depends(get_settings),
) -> LedgerService:
    return get_ledger_service(account_repo, transaction_repo, transaction_manager, settings)


def get_queries(
    account_repo=Depends(get_account_repository),
    transaction_repo=Depends(get_transaction_repository),
    transaction_manager=Depends(get_transaction_manager),
    settings: Settings = Depends(get_settings),
) -> AccountQueryService:
    return get_query_service(account_repo, transaction_repo, transaction_manager, settings)


async def run_operation(operation: str, call: Awaitable[T], **context) -> T:
    """Await a service call, logging failures and hiding unexpected errors."""
    try:
        return await call
    except LedgerError as e:
        logger.warning(
            f"{operation} request failed",
            error_code=e.error_code,
            status_code=e.status_code,
            detail=str(e),
            **context,
        )
        raise
    except Exception as e:
        logger.error(
            f"{operation} request failed with unexpected error",
            error=str(e),
            exc_info=True,
            **context,
        )
        raise StoreError() from e


router = APIRouter(prefix="/api/accounts", tags=["accounts"])


@router.post("/deposit", response_model=ApiResponse, summary="Deposit funds")
async def deposit(
    body: AmountRequest,
    service: LedgerService = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
):
    iban = body.iban or settings.default_account_id
    account = await run_operation("Deposit", service.deposit(iban, body.amount), iban=iban)
    return ApiResponse(success=True, message="Deposit successful", data=account)


@router.post("/withdraw", response_model=ApiResponse, summary="Withdraw funds")
async def withdraw(
    body: AmountRequest,
    service: LedgerService = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
):
    iban = body.iban or settings.default_account_id
    balance = await run_operation("Withdrawal", service.withdraw(iban, body.amount), iban=iban)
    return ApiResponse(success=True, message="Withdrawal successful", data=BalanceData(balance=balance))


@router.post(
    "/transfer",
    response_model=ApiResponse,
    summary="Transfer funds",
    responses={
        400: {"description": "Invalid amount, missing fields, same account or insufficient funds"},
        404: {"description": "Sender or recipient account not found"},
        409: {"description": "Concurrent update, retry"},
        503: {"description": "Transaction timed out, retry"},
    },
)
async def transfer(body: TransferRequest, service: LedgerService = Depends(get_ledger)):
    balance = await run_operation(
        "Transfer",
        service.transfer(body.senderIBAN, body.recipientIBAN, body.amount),
        sender_iban=body.senderIBAN,
        recipient_iban=body.recipientIBAN,
    )
    return ApiResponse(success=True, message="Transfer successful", data=BalanceData(balance=balance))


@router.get("/info", response_model=ApiResponse, summary="Account balance")
async def account_info(
    iban: str = Query(..., min_length=1),
    queries: AccountQueryService = Depends(get_queries),
):
    balance = await run_operation("Account info", queries.get_balance(iban), iban=iban)
    return ApiResponse(success=True, data=BalanceData(balance=balance))


@router.get("/statement", response_model=ApiResponse, summary="Account statement, newest first")
async def statement(
    iban: str = Query(..., min_length=1),
    queries: AccountQueryService = Depends(get_queries),
):
    transactions = await run_operation("Statement", queries.get_statement(iban), iban=iban)
    return ApiResponse(success=True, data=transactions)


@router.get("/others", response_model=ApiResponse, summary="Other account IBANs")
async def other_accounts(
    currentIBAN: Optional[str] = Query(default=None),
    queries: AccountQueryService = Depends(get_queries),
):
    ibans = await run_operation("Other accounts", queries.list_other_accounts(currentIBAN), iban=currentIBAN)
    return ApiResponse(success=True, data=ibans)


app.include_router(router)


# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger statistics",
)
async def health_check(
    account_repo=Depends(get_account_repository),
    transaction_repo=Depends(get_transaction_repository),
):
    try:
        accounts_count = await account_repo.get_accounts_count()
        transactions_count = await transaction_repo.get_transactions_count()

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            transactions_count=transactions_count,
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(status_code=500, detail="Health check failed")


def error_response(status_code: int, message: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, error_code=error_code).model_dump(mode="json"),
    )


# Exception handlers
@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    return error_response(exc.status_code, exc.message, exc.error_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", url=str(request.url), errors=len(exc.errors()))
    return error_response(422, "Invalid request payload", "VALIDATION_ERROR")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True,
    )
    return error_response(500, "Internal server error", "INTERNAL_ERROR")


# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )

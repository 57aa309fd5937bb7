from contextlib import asynccontextmanager
from typing import Callable

import anyio
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from referrals.codes import generate_unique_referral_code
from referrals.rate_limit import InMemoryRateLimiter, RateLimiter

from .config import Settings, get_settings
from .logging import configure_logging
from .models import (
    AccountBalance, ExtensionSettlement, PaymentSettlement,
    ReferralCodeRequest, ReferralCodeResponse,
)
from .service import (
    SettlementService, SettlementError, NotFoundError,
    AlreadySettledError, ConfigurationError, DependencyFailure,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        level=settings.log_level,
    )
    yield


app = FastAPI(
    title="GEUWAT Settlement API",
    description="Membership payment and extension settlement with referral bonus and cashback ledger",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

settlement_service = SettlementService()
rate_limiter = InMemoryRateLimiter(
    max_requests=get_settings().rate_limit_max_requests,
    window_seconds=get_settings().rate_limit_window_seconds,
)


def get_settlement_service() -> SettlementService:
    return settlement_service


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


def caller_identity(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)) -> None:
    if not limiter.hit(caller_identity(request)):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Try again later.",
        )


async def _run_bounded(func: Callable, arg: str, timeout: float):
    try:
        with anyio.fail_after(timeout):
            return await anyio.to_thread.run_sync(func, arg, abandon_on_cancel=True)
    except TimeoutError as e:
        raise DependencyFailure(f"{func.__name__} did not finish within {timeout}s") from e


def _http_error(e: SettlementError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, AlreadySettledError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, DependencyFailure):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "geuwat-settlement"}


@app.post(
    "/accounts/{account_id}/settle-payment",
    response_model=PaymentSettlement,
    tags=["Settlement"],
)
async def settle_payment(
    account_id: str,
    service: SettlementService = Depends(get_settlement_service),
    settings: Settings = Depends(get_settings),
) -> PaymentSettlement:
    try:
        return await _run_bounded(service.settle_payment, account_id, settings.settlement_timeout_seconds)
    except SettlementError as e:
        raise _http_error(e)


@app.post(
    "/extension-requests/{extension_id}/approve",
    response_model=ExtensionSettlement,
    tags=["Settlement"],
)
async def approve_extension(
    extension_id: str,
    service: SettlementService = Depends(get_settlement_service),
    settings: Settings = Depends(get_settings),
) -> ExtensionSettlement:
    try:
        return await _run_bounded(service.settle_extension, extension_id, settings.settlement_timeout_seconds)
    except SettlementError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/balance", response_model=AccountBalance, tags=["Accounts"])
def get_account_balance(
    account_id: str, service: SettlementService = Depends(get_settlement_service)
) -> AccountBalance:
    try:
        return service.get_balance(account_id)
    except SettlementError as e:
        raise _http_error(e)


@app.post("/accounts/{account_id}/balance/reconcile", response_model=AccountBalance, tags=["Accounts"])
def reconcile_account_balance(
    account_id: str, service: SettlementService = Depends(get_settlement_service)
) -> AccountBalance:
    try:
        return service.reconcile_balance(account_id)
    except SettlementError as e:
        raise _http_error(e)


@app.post(
    "/referral-codes",
    response_model=ReferralCodeResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Referrals"],
    dependencies=[Depends(enforce_rate_limit)],
)
def create_referral_code(
    request: ReferralCodeRequest,
    service: SettlementService = Depends(get_settlement_service),
    settings: Settings = Depends(get_settings),
) -> ReferralCodeResponse:
    code = generate_unique_referral_code(
        request.email,
        request.whatsapp,
        request.was_referred,
        exists=service.accounts.referral_code_exists,
        max_attempts=settings.referral_code_max_attempts,
    )
    return ReferralCodeResponse(referral_code=code)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

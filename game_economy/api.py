"""
FastAPI REST API Module

Thin HTTP wrapper over the economy system: transfers, balances, history
and treasury administration. Every response uses the
``{"success": ..., ...}`` envelope; failures carry a stable ``code``.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from . import __version__
from .amounts import Currency
from .errors import EconomyError, Forbidden, RateLimitExceeded, Unauthorized
from .logging_config import get_logger, log_action
from .system import EconomySystem, get_economy_system
from .transaction_log import TransactionRecord


logger = get_logger("game_economy.api")

# JWT Security
security = HTTPBearer(auto_error=False)


@dataclass
class Caller:
    """Identity of the authenticated caller"""
    account_id: str
    role: str = "user"


# Pydantic models for API requests

class TransferRequest(BaseModel):
    receiverId: str = Field(..., min_length=1, description="Receiving account id")
    # Validated by the engine so malformed amounts get INVALID_AMOUNT
    amount: Any = Field(..., description="Decimal amount as string, e.g. \"12.50\"")
    currency: str = Field(..., description="Currency code (EURO, GOLD, RON)")
    description: str = Field("", max_length=500)


class FreezeRequest(BaseModel):
    reason: str = Field("", max_length=500)


# Authentication Dependencies

def get_current_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_account_id: Optional[str] = Header(None),
    x_role: Optional[str] = Header(None),
    system: EconomySystem = Depends(get_economy_system)
) -> Caller:
    """Dependency that validates the JWT and returns the caller"""
    config = system.config
    if not config.auth_enabled:
        # Identity asserted by the trusted gateway
        if not x_account_id:
            raise Unauthorized("Missing X-Account-Id header")
        return Caller(account_id=x_account_id, role=x_role or "user")

    if not credentials:
        raise Unauthorized("Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")

    account_id = payload.get("sub")
    if not account_id:
        raise Unauthorized("Invalid token")
    return Caller(account_id=str(account_id), role=payload.get("role") or "user")


def require_admin(
    caller: Caller = Depends(get_current_caller),
    system: EconomySystem = Depends(get_economy_system)
) -> Caller:
    if caller.role != system.config.admin_role:
        raise Forbidden("Admin role required")
    return caller


def _record_view(record: TransactionRecord, account_id: str) -> Dict[str, Any]:
    view = record.to_dict()
    view["direction"] = "sent" if record.sender_id == account_id else "received"
    return view


# Player endpoints

router = APIRouter()


@router.post("/transfer")
def transfer(
    request: TransferRequest,
    caller: Caller = Depends(get_current_caller),
    system: EconomySystem = Depends(get_economy_system)
):
    """Transfer money to another account, withholding transfer tax"""
    record = system.transfer_engine.transfer(
        sender_id=caller.account_id,
        receiver_id=request.receiverId,
        currency=request.currency,
        gross_amount=request.amount,
        description=request.description,
    )
    return {
        "success": True,
        "message": "Transfer completed",
        "data": {
            "transaction_id": record.id,
            "amounts": {
                "gross": str(record.gross_amount),
                "tax": str(record.tax_amount),
                "net": str(record.net_amount),
                "tax_rate": str(record.tax_rate),
                "currency": record.currency.value,
            },
        },
    }


@router.get("/balances")
def get_balances(
    caller: Caller = Depends(get_current_caller),
    system: EconomySystem = Depends(get_economy_system)
):
    balances = system.query_service.get_all_balances(caller.account_id)
    return {
        "success": True,
        "balances": {currency.value: str(amount) for currency, amount in balances.items()},
    }


@router.get("/balance/{currency}")
def get_balance(
    currency: str,
    caller: Caller = Depends(get_current_caller),
    system: EconomySystem = Depends(get_economy_system)
):
    resolved = Currency.from_code(currency)
    balance = system.query_service.get_balance(caller.account_id, resolved)
    return {"success": True, "currency": resolved.value, "balance": str(balance)}


@router.get("/history")
def get_history(
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    caller: Caller = Depends(get_current_caller),
    system: EconomySystem = Depends(get_economy_system)
):
    """Transaction history, newest first"""
    history = system.query_service.get_history(caller.account_id, page=page, page_size=limit)
    return {
        "success": True,
        "data": {
            "transactions": [_record_view(r, caller.account_id) for r in history.items],
            "page": history.page,
            "page_size": history.page_size,
            "has_more": history.has_more,
        },
    }


# Admin endpoints

admin_router = APIRouter()


@admin_router.get("/treasury")
def get_treasury(
    admin: Caller = Depends(require_admin),
    system: EconomySystem = Depends(get_economy_system)
):
    return {"success": True, "data": system.query_service.get_treasury_report()}


@admin_router.post("/accounts/{account_id}/freeze")
def freeze_account(
    account_id: str,
    request: Optional[FreezeRequest] = None,
    admin: Caller = Depends(require_admin),
    system: EconomySystem = Depends(get_economy_system)
):
    reason = request.reason if request else ""
    account = system.ledger.freeze_account(account_id, reason=reason)
    log_action(logger, "warning", "Account frozen by admin", account_id=admin.account_id,
               action="freeze_account", resource=f"account:{account_id}")
    return {"success": True, "data": account.to_dict()}


@admin_router.post("/accounts/{account_id}/unfreeze")
def unfreeze_account(
    account_id: str,
    admin: Caller = Depends(require_admin),
    system: EconomySystem = Depends(get_economy_system)
):
    account = system.ledger.unfreeze_account(account_id)
    log_action(logger, "info", "Account unfrozen by admin", account_id=admin.account_id,
               action="unfreeze_account", resource=f"account:{account_id}")
    return {"success": True, "data": account.to_dict()}


@admin_router.post("/accounts/{account_id}/rate-limit/reset")
def reset_rate_limit(
    account_id: str,
    admin: Caller = Depends(require_admin),
    system: EconomySystem = Depends(get_economy_system)
):
    """Clear an account's rate limit counters"""
    system.ledger.require_account(account_id)
    if system.rate_limiter is not None:
        system.rate_limiter.reset(account_id)
    log_action(logger, "info", "Rate limits reset by admin", account_id=admin.account_id,
               action="reset_rate_limit", resource=f"account:{account_id}")
    return {"success": True, "message": f"Rate limits reset for {account_id}"}


@admin_router.get("/integrity")
def verify_integrity(
    admin: Caller = Depends(require_admin),
    system: EconomySystem = Depends(get_economy_system)
):
    return {"success": True, "data": system.query_service.verify_integrity()}


def create_app(system: Optional[EconomySystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Economy system to serve; the global instance when omitted
    """
    app = FastAPI(
        title="Game Economy API",
        description="Currency balances, taxed transfers and treasury accounting",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    if system is not None:
        app.dependency_overrides[get_economy_system] = lambda: system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EconomyError)
    async def economy_error_handler(request: Request, exc: EconomyError):
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": message, "code": "VALIDATION_ERROR"},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"},
        )

    app.include_router(router, tags=["Economy"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "game_economy_api",
            "version": __version__
        }

    return app


def run_server(system: EconomySystem, host: str = "0.0.0.0", port: int = 8092, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        create_app(system),
        host=host,
        port=port,
        log_level="debug" if debug else "info"
    )

"""
FastAPI server for the reservation escrow.

Exposes the transaction lifecycle, disputes, vendor approvals, the chat
screening path and the admin operations, and receives payment gateway
webhooks. Callers are identified by the ``X-User-Id`` header set by the
upstream authentication proxy; admin routes require ``X-Admin-Key``.
"""

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Literal

from fastapi import FastAPI, Request, Depends, Header, HTTPException, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from chat_violations import ChatGuard, ViolationTracker
from config import Config
from dispute_service import DisputeService, DEFAULT_PAGE_SIZE as DISPUTE_PAGE_SIZE
from escrow_service import EscrowService, EscrowError
from payment_gateway import GatewayError
from vendor_approval_service import VendorApprovalService

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT = 3

HTTP_ERROR_CODES = {
    400: "ValidationError",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
}


@dataclass
class AppServices:
    """Everything the routes need; built by main.py or by the tests."""
    config: Config
    store: Any
    gateway: Any
    escrow: EscrowService
    disputes: DisputeService
    vendor_approvals: VendorApprovalService
    tracker: ViolationTracker
    chat_guard: ChatGuard
    automation: Optional[Any] = None


# ==================== Pydantic Models ====================

class CreateTransactionRequest(BaseModel):
    listing_id: int
    quantity: int = Field(1, ge=1, le=20)


class PaymentRequest(BaseModel):
    method: Literal['PIX', 'CARD', 'BOLETO']

    @field_validator('method', mode='before')
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class ReasonRequest(BaseModel):
    """Body for cancellation and refund."""
    reason: str = Field(..., min_length=1, max_length=500)


class DisputeOutcomeRequest(BaseModel):
    action: Literal['reopen_transfer', 'refund', 'cancel']
    reason: Optional[str] = Field(None, max_length=500)


class OpenDisputeRequest(BaseModel):
    reason: Literal['listing_mismatch', 'transfer_rejected', 'missing_documentation', 'payment_issues', 'other']
    description: str = Field(..., min_length=50, max_length=2000)
    evidence_urls: List[str] = Field(default_factory=list, max_length=10)


class ResolveDisputeRequest(BaseModel):
    resolution: Literal['RESOLVED_BUYER', 'RESOLVED_SELLER', 'CLOSED']
    notes: Optional[str] = Field(None, max_length=2000)


class VendorApprovalRequest(BaseModel):
    vendor_email: str = Field(..., min_length=3, max_length=254)
    vendor_name: Optional[str] = Field(None, max_length=200)
    vendor_phone: Optional[str] = Field(None, max_length=30)


class VendorResponseRequest(BaseModel):
    action: Literal['approve', 'reject']
    reason: Optional[str] = Field(None, max_length=1000)


class ChatScreenRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1, max_length=100)
    text: str = Field(..., max_length=4000)
    transaction_id: Optional[int] = None


class GatewayWebhook(BaseModel):
    """Gateway webhook envelope; the resource bodies are passed through."""
    event: str
    payment: Optional[Dict[str, Any]] = None
    transfer: Optional[Dict[str, Any]] = None


# ==================== Dependencies ====================

def get_services(request: Request) -> AppServices:
    return request.app.state.services


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


def require_admin(
    x_admin_key: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    services: AppServices = Depends(get_services)
) -> str:
    """Returns the admin's id (X-User-Id, or 'admin')."""
    expected = services.config.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return x_user_id or 'admin'


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get('x-forwarded-for')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.client.host if request.client else None


def verify_webhook(config: Config, raw_body: bytes, headers: Any) -> bool:
    """
    Authenticate a gateway webhook.

    HMAC-SHA256 of the raw body when a secret is configured, otherwise the
    shared access token. Rejects everything when neither is configured.
    """
    if config.gateway_webhook_secret:
        signature = headers.get('x-gateway-signature', '')
        expected = hmac.new(
            config.gateway_webhook_secret.encode('utf-8'), raw_body, hashlib.sha256
        ).hexdigest()
        return bool(signature) and hmac.compare_digest(signature.lower(), expected)

    if config.gateway_webhook_token:
        token = headers.get('gateway-access-token', '')
        return bool(token) and hmac.compare_digest(token, config.gateway_webhook_token)

    return False


# ==================== Application ====================

def create_app(services: AppServices) -> FastAPI:
    """
    Build the FastAPI application around a set of services.

    Args:
        services: Wired services (see main.py)

    Returns:
        FastAPI application
    """
    config = services.config
    app = FastAPI(
        title="Reservation Escrow API",
        description="Escrow for reservation resale: transactions, disputes, vendor approvals",
        version=config.app_version
    )
    app.state.services = services
    app.state.started_at = time.monotonic()

    # ==================== Error Handlers ====================

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
        content = {"error": exc.code, "detail": exc.message}
        if exc.details:
            content["context"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.error(f"Gateway failure on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": exc.code, "detail": str(exc)}
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": HTTP_ERROR_CODES.get(exc.status_code, "HTTPError"), "detail": exc.detail},
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "ValidationError",
                "detail": "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'][1:])}: {err['msg']}" for err in exc.errors()
                )
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalError",
                "detail": str(exc) if config.is_debug else "Internal server error",
                "path": str(request.url.path)
            }
        )

    # ==================== Info & Health ====================

    @app.get("/", tags=["Info"])
    async def root():
        return {
            "service": config.app_name,
            "version": config.app_version,
            "status": "running",
            "endpoints": {
                "transactions": "/transactions",
                "disputes": "/disputes",
                "webhook": "/webhooks/gateway",
                "health": "/health",
                "docs": "/docs"
            }
        }

    @app.get("/health", tags=["Health"])
    async def health_check(services: AppServices = Depends(get_services)):
        """
        Health check endpoint.

        ``ok`` when database and gateway answer, ``degraded`` when only the
        gateway fails, ``down`` (503) when the database fails.
        """
        checks = {}

        try:
            await asyncio.wait_for(services.store.ping(), timeout=HEALTH_CHECK_TIMEOUT)
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {type(e).__name__}"

        try:
            reachable = await asyncio.wait_for(services.gateway.ping(), timeout=HEALTH_CHECK_TIMEOUT)
            checks["gateway"] = "ok" if reachable else "error: unreachable"
        except Exception as e:
            checks["gateway"] = f"error: {type(e).__name__}"

        if checks["database"] != "ok":
            health_status = "down"
        elif checks["gateway"] != "ok":
            health_status = "degraded"
        else:
            health_status = "ok"

        content = {
            "status": health_status,
            "version": config.app_version,
            "uptime_seconds": round(time.monotonic() - app.state.started_at, 1),
            "checks": checks
        }
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE if health_status == "down" else status.HTTP_200_OK
        return JSONResponse(content=content, status_code=status_code)

    # ==================== Gateway Webhook ====================

    @app.post("/webhooks/gateway", tags=["Gateway"])
    async def gateway_webhook(request: Request, services: AppServices = Depends(get_services)):
        """
        Handle payment gateway notifications.

        Duplicate deliveries are acknowledged without being processed again.
        """
        raw_body = await request.body()
        if not verify_webhook(config, raw_body, request.headers):
            logger.warning(f"Rejected unauthenticated webhook from {client_ip(request)}")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook credentials")

        try:
            webhook = GatewayWebhook.model_validate_json(raw_body)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

        logger.info(f"Received gateway webhook: {webhook.event}")
        result = await services.escrow.handle_gateway_event(
            webhook.event, webhook.model_dump(exclude_none=True)
        )
        return {"received": True, **result}

    # ==================== Transactions ====================

    @app.post("/transactions", status_code=status.HTTP_201_CREATED, tags=["Transactions"])
    async def create_transaction(
        body: CreateTransactionRequest,
        request: Request,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.create_transaction(
            body.listing_id, user_id, body.quantity, buyer_ip=client_ip(request)
        )

    @app.get("/transactions", tags=["Transactions"])
    async def list_transactions(
        page: int = Query(1, ge=1),
        per_page: int = Query(20, ge=1, le=50),
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.list_transactions(user_id, page, per_page)

    @app.get("/transactions/{transaction_id}", tags=["Transactions"])
    async def get_transaction(
        transaction_id: int,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.get_transaction(transaction_id, user_id)

    @app.post("/transactions/{transaction_id}/payment", status_code=status.HTTP_201_CREATED, tags=["Transactions"])
    async def create_payment(
        transaction_id: int,
        body: PaymentRequest,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.create_payment(transaction_id, user_id, body.method)

    @app.post("/transactions/{transaction_id}/reconcile", tags=["Transactions"])
    async def reconcile_payment(
        transaction_id: int,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        await services.escrow.get_transaction(transaction_id, user_id)
        return await services.escrow.reconcile_payment(transaction_id)

    @app.post("/transactions/{transaction_id}/transfer", tags=["Transactions"])
    async def mark_transferred(
        transaction_id: int,
        request: Request,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.mark_transferred(transaction_id, user_id, client_ip(request))

    @app.post("/transactions/{transaction_id}/confirm", tags=["Transactions"])
    async def confirm_receipt(
        transaction_id: int,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.confirm_receipt(transaction_id, user_id)

    @app.post("/transactions/{transaction_id}/cancel", tags=["Transactions"])
    async def cancel_transaction(
        transaction_id: int,
        body: ReasonRequest,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.cancel(transaction_id, user_id, body.reason)

    # ==================== Disputes ====================

    @app.post("/transactions/{transaction_id}/disputes", status_code=status.HTTP_201_CREATED, tags=["Disputes"])
    async def open_dispute(
        transaction_id: int,
        body: OpenDisputeRequest,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.disputes.open_dispute(
            transaction_id, user_id, body.reason, body.description, body.evidence_urls
        )

    @app.get("/disputes", tags=["Disputes"])
    async def list_disputes(
        page: int = Query(1, ge=1),
        per_page: int = Query(DISPUTE_PAGE_SIZE, ge=1, le=50),
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.disputes.list_disputes(user_id, page, per_page)

    @app.get("/disputes/{dispute_id}", tags=["Disputes"])
    async def get_dispute(
        dispute_id: int,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.disputes.get_dispute(dispute_id, user_id)

    # ==================== Vendor Approvals ====================

    @app.post(
        "/transactions/{transaction_id}/vendor-approval",
        status_code=status.HTTP_201_CREATED,
        tags=["Vendor Approval"]
    )
    async def request_vendor_approval(
        transaction_id: int,
        body: VendorApprovalRequest,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        return await services.vendor_approvals.request_approval(
            transaction_id, user_id, body.vendor_email, body.vendor_name, body.vendor_phone
        )

    @app.get("/transactions/{transaction_id}/vendor-approval", tags=["Vendor Approval"])
    async def get_vendor_approval(
        transaction_id: int,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        approval = await services.vendor_approvals.get_for_transaction(transaction_id, user_id)
        return {"approval": approval}

    @app.get("/vendor-approvals/{token}", tags=["Vendor Approval"])
    async def view_vendor_approval(token: str, services: AppServices = Depends(get_services)):
        return await services.vendor_approvals.get_by_token(token)

    @app.post("/vendor-approvals/{token}", tags=["Vendor Approval"])
    async def respond_vendor_approval(
        token: str,
        body: VendorResponseRequest,
        request: Request,
        services: AppServices = Depends(get_services)
    ):
        approval = await services.vendor_approvals.respond(
            token, body.action, body.reason, client_ip(request)
        )
        return {"status": approval['status']}

    # ==================== Chat ====================

    @app.post("/chat/screen", tags=["Chat"])
    async def screen_message(
        body: ChatScreenRequest,
        user_id: str = Depends(current_user),
        services: AppServices = Depends(get_services)
    ):
        """Run before every send: returns whether the message may go out."""
        transaction_status = None
        if body.transaction_id is not None:
            transaction = await services.escrow.get_transaction(body.transaction_id, user_id)
            transaction_status = transaction['status']

        result = await services.chat_guard.screen_message(
            user_id, body.conversation_id, body.text, transaction_status
        )
        return result.to_dict()

    # ==================== Admin ====================

    @app.post("/admin/transactions/{transaction_id}/refund", tags=["Admin"])
    async def admin_refund(
        transaction_id: int,
        body: ReasonRequest,
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.refund(transaction_id, admin_id, body.reason)

    @app.post("/admin/transactions/{transaction_id}/dispute-outcome", tags=["Admin"])
    async def admin_dispute_outcome(
        transaction_id: int,
        body: DisputeOutcomeRequest,
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        return await services.escrow.apply_dispute_outcome(
            transaction_id, admin_id, body.action, body.reason
        )

    @app.post("/admin/disputes/{dispute_id}/review", tags=["Admin"])
    async def admin_start_review(
        dispute_id: int,
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        return await services.disputes.start_review(dispute_id, admin_id)

    @app.post("/admin/disputes/{dispute_id}/resolve", tags=["Admin"])
    async def admin_resolve_dispute(
        dispute_id: int,
        body: ResolveDisputeRequest,
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        return await services.disputes.resolve_dispute(dispute_id, admin_id, body.resolution, body.notes)

    @app.get("/admin/fraud/listings/{listing_id}", tags=["Admin"])
    async def admin_listing_risk(
        listing_id: int,
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        result = await services.escrow.assess_listing_risk(listing_id)
        return result.to_dict()

    @app.get("/admin/fraud/transactions/{transaction_id}", tags=["Admin"])
    async def admin_transaction_risk(
        transaction_id: int,
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        transaction = await services.escrow.get_transaction_or_404(transaction_id)
        result = await services.escrow.assess_transaction_risk(transaction, enqueue=False)
        return result.to_dict()

    @app.get("/admin/violations", tags=["Admin"])
    async def admin_list_violations(
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        return {"items": await services.tracker.get_all_violations()}

    @app.delete("/admin/violations/{user_id}", tags=["Admin"])
    async def admin_clear_violations(
        user_id: str,
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        cleared = await services.tracker.clear_violations(user_id)
        if not cleared:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No violations recorded")
        return {"cleared": True, "user_id": user_id}

    @app.post("/admin/jobs/auto-release", tags=["Admin"])
    async def admin_run_auto_release(
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        released = await services.escrow.process_auto_releases()
        return {"released": [txn['code'] for txn in released]}

    @app.get("/admin/stats", tags=["Admin"])
    async def admin_stats(
        admin_id: str = Depends(require_admin),
        services: AppServices = Depends(get_services)
    ):
        if services.automation is None:
            return {"is_running": False}
        return services.automation.get_stats()

    return app

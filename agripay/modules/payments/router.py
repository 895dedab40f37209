import hmac
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from agripay.config import settings
from agripay.metrics import PAYMENT_INITIATED
from agripay.schemas.payment import (
    ConfigCheckResponse,
    ErrorResponse,
    PaymentIntentView,
    StatusRequest,
    StatusResponse,
    StkPushRequest,
    StkPushResponse,
    ValidatePhoneRequest,
    ValidatePhoneResponse,
)
from agripay.services.callback_handler import CallbackHandler
from agripay.services.exceptions import (
    AlreadyAttached,
    CredentialError,
    GatewayRejected,
    NotFound,
    PaymentError,
    ValidationError,
)
from agripay.services.mpesa_gateway import MpesaGateway, get_gateway, validate_amount
from agripay.services.payment_store import PaymentIntentStore, get_store
from agripay.services.reconciliation import Reconciler

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}}


def get_callback_handler(store: PaymentIntentStore = Depends(get_store)) -> CallbackHandler:
    return CallbackHandler(store)


def get_reconciler(store: PaymentIntentStore = Depends(get_store), gateway: MpesaGateway = Depends(get_gateway)) -> Reconciler:
    return Reconciler(store, gateway)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def _status_for(exc: PaymentError) -> int:
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, AlreadyAttached):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (ValidationError, CredentialError, GatewayRejected)):
        return status.HTTP_400_BAD_REQUEST
    # connectivity and unexpected gateway responses
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _client_ip(request: Request):
    return request.client.host if request.client else None


def callback_authorized(request: Request) -> bool:
    """Check the shared secret and source address configured for Daraja callbacks."""
    secret = settings.MPESA_CALLBACK_SECRET
    if secret:
        supplied = request.query_params.get("token") or request.headers.get("x-callback-token") or ""
        if not hmac.compare_digest(supplied.encode(), secret.encode()):
            return False
    allowed = settings.callback_allowed_ips
    if allowed and _client_ip(request) not in allowed:
        return False
    return True


@router.get("/")
async def payments_root():
    return {"module": "payments", "status": "ok"}


@router.post("/mpesa/stk-push", response_model=StkPushResponse, responses=ERROR_RESPONSES)
async def initiate_stk_push(
    req: StkPushRequest,
    request: Request,
    store: PaymentIntentStore = Depends(get_store),
    gateway: MpesaGateway = Depends(get_gateway),
):
    try:
        phone = gateway.normalize_phone(req.phone)
        amount = validate_amount(req.amount, gateway.min_amount, gateway.max_amount)
    except ValidationError as exc:
        PAYMENT_INITIATED.labels(result="invalid").inc()
        return _error(status.HTTP_400_BAD_REQUEST, exc.message)

    try:
        intent = await store.create(phone, amount, req.reference, req.description, ip_address=_client_ip(request))
    except SQLAlchemyError:
        logger.exception("unable to create payment intent", extra={"phone": phone, "amount": amount})
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Unable to create payment record")

    try:
        push = await gateway.initiate_push(phone, amount, req.reference, req.description)
    except PaymentError as exc:
        PAYMENT_INITIATED.labels(result=type(exc).__name__).inc()
        logger.warning(
            "stk push failed",
            extra={"intent_id": intent.id, "phone": phone, "amount": amount, "error": exc.message},
        )
        # the intent never receives a provider id
        try:
            await store.fail_unattached(intent.id, exc.message)
        except SQLAlchemyError:
            # left pending with no checkout id; the sweep never selects it
            logger.exception("unable to close failed payment intent", extra={"intent_id": intent.id})
        return _error(_status_for(exc), exc.message)

    try:
        await store.attach_provider_ids(intent.id, push.checkout_id, push.merchant_request_id, raw=push.raw)
    except (PaymentError, SQLAlchemyError):
        # the payer may be charged with no local record of it
        logger.critical(
            "stk push accepted but not recorded",
            exc_info=True,
            extra={"intent_id": intent.id, "checkout_id": push.checkout_id, "phone": phone, "amount": amount},
        )
        PAYMENT_INITIATED.labels(result="unrecorded").inc()
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Payment request was sent but could not be recorded")

    PAYMENT_INITIATED.labels(result="ok").inc()
    return StkPushResponse(
        checkout_id=push.checkout_id,
        merchant_request_id=push.merchant_request_id,
        customer_message=push.customer_message,
        intent_id=intent.id,
        phone=phone,
        amount=amount,
    )


@router.post("/mpesa/callback")
async def mpesa_callback(request: Request, handler: CallbackHandler = Depends(get_callback_handler)):
    if not callback_authorized(request):
        logger.warning("rejected unauthenticated mpesa callback", extra={"ip_address": _client_ip(request)})
        return _error(status.HTTP_403_FORBIDDEN, "Forbidden")

    try:
        payload = await request.json()
    except ValueError:
        payload = None
    return await handler.handle(payload)


@router.post("/mpesa/status", response_model=StatusResponse, responses=ERROR_RESPONSES)
async def check_transaction_status(req: StatusRequest, reconciler: Reconciler = Depends(get_reconciler)):
    try:
        result = await reconciler.reconcile(req.checkout_id)
    except PaymentError as exc:
        logger.warning("status check failed", extra={"checkout_id": req.checkout_id, "error": exc.message})
        return _error(_status_for(exc), exc.message)
    return StatusResponse(status=result.status, result_desc=result.result_desc)


@router.get("/mpesa/intents/{checkout_id}", response_model=PaymentIntentView, responses=ERROR_RESPONSES)
async def get_intent(checkout_id: str, store: PaymentIntentStore = Depends(get_store)):
    try:
        intent = await store.find(checkout_id)
    except NotFound as exc:
        return _error(status.HTTP_404_NOT_FOUND, exc.message)
    return PaymentIntentView.model_validate(intent)


@router.post("/mpesa/validate-phone", response_model=ValidatePhoneResponse)
async def validate_phone(req: ValidatePhoneRequest, gateway: MpesaGateway = Depends(get_gateway)):
    try:
        formatted = gateway.normalize_phone(req.phone)
    except ValidationError:
        return ValidatePhoneResponse(valid=False)
    return ValidatePhoneResponse(valid=True, formatted=formatted)


@router.get("/mpesa/test-config", response_model=ConfigCheckResponse, responses=ERROR_RESPONSES)
async def test_mpesa_config(gateway: MpesaGateway = Depends(get_gateway)):
    checks = gateway.check_configuration()
    if not all(checks.values()):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"message": "M-Pesa configuration incomplete", "configured": False, "settings": checks},
        )
    try:
        await gateway.acquire_token()
    except PaymentError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, f"M-Pesa configuration test failed: {exc.message}")
    return ConfigCheckResponse(configured=True, settings=checks, token_acquired=True)

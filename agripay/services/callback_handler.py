import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from agripay.metrics import CALLBACKS_RECEIVED, PAYMENT_FAILURE, PAYMENT_SUCCESS
from agripay.models.models import COMPLETED, FAILED
from agripay.services.payment_store import PaymentIntentStore

logger = logging.getLogger(__name__)

# Daraja retries delivery until it sees exactly this body
ACK = {"ResultCode": 0, "ResultDesc": "Success"}

INDETERMINATE = "indeterminate"


@dataclass
class StkCallback:
    checkout_id: str
    merchant_request_id: Optional[str]
    result_code: int
    result_desc: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_number(self) -> Optional[str]:
        value = self.metadata.get("MpesaReceiptNumber")
        return str(value) if value is not None else None


def parse_metadata(raw: Any) -> Dict[str, Any]:
    """Flatten ``CallbackMetadata.Item`` ([{Name, Value}, ...]) into a dict."""
    items = raw.get("Item") if isinstance(raw, dict) else None
    if not isinstance(items, list):
        return {}
    out = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            # Balance is sent without a Value
            out[item["Name"]] = item.get("Value")
    return out


def parse_stk_callback(payload: Any) -> Optional[StkCallback]:
    """Return the parsed callback, or None if the expected nested fields are missing."""
    if not isinstance(payload, dict):
        return None
    body = payload.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        return None

    checkout_id = stk.get("CheckoutRequestID")
    try:
        result_code = int(stk.get("ResultCode"))
    except (TypeError, ValueError):
        return None
    if not checkout_id or not isinstance(checkout_id, str):
        return None

    return StkCallback(
        checkout_id=checkout_id,
        merchant_request_id=stk.get("MerchantRequestID"),
        result_code=result_code,
        result_desc=stk.get("ResultDesc"),
        metadata=parse_metadata(stk.get("CallbackMetadata")),
    )


class CallbackHandler:
    def __init__(self, store: PaymentIntentStore):
        self.store = store

    async def handle(self, payload: Any) -> Dict[str, Any]:
        """Apply an STK callback and return the acknowledgment Daraja expects.

        The acknowledgment is unconditional: a non-success reply makes the
        provider redeliver indefinitely, so every internal failure is logged
        here and not raised.
        """
        try:
            outcome = await self.process(payload)
        except Exception:
            logger.exception("mpesa callback processing failed")
            outcome = "error"
        CALLBACKS_RECEIVED.labels(outcome=outcome).inc()
        return dict(ACK)

    async def process(self, payload: Any) -> str:
        callback = parse_stk_callback(payload)
        if callback is None:
            logger.warning("unexpected mpesa callback format", extra={"payload": payload})
            return INDETERMINATE

        logger.info(
            "mpesa callback received",
            extra={"checkout_id": callback.checkout_id, "result_code": callback.result_code, "result_desc": callback.result_desc},
        )

        if callback.succeeded:
            result = await self.store.mark_terminal(
                callback.checkout_id,
                COMPLETED,
                receipt_id=callback.receipt_number,
                raw_payload=payload,
                result_code=callback.result_code,
                result_desc=callback.result_desc,
                transaction_date=_as_str(callback.metadata.get("TransactionDate")),
                actor="mpesa-callback",
            )
            paid = callback.metadata.get("Amount")
            if paid is not None and _as_int(paid) != result.intent.amount:
                logger.warning(
                    "callback amount differs from intent",
                    extra={"checkout_id": callback.checkout_id, "amount": result.intent.amount, "paid": paid, "phone": result.intent.phone},
                )
            if result.applied:
                PAYMENT_SUCCESS.labels(source="callback").inc()
            return COMPLETED if result.applied else "duplicate"

        result = await self.store.mark_terminal(
            callback.checkout_id,
            FAILED,
            raw_payload=payload,
            result_code=callback.result_code,
            result_desc=callback.result_desc,
            actor="mpesa-callback",
        )
        if result.applied:
            PAYMENT_FAILURE.labels(source="callback").inc()
        return FAILED if result.applied else "duplicate"


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

from agripay.metrics import PAYMENT_FAILURE, PAYMENT_SUCCESS
from agripay.models.models import CANCELLED, COMPLETED, FAILED, PaymentIntent, utcnow
from agripay.services.exceptions import ConnectivityError, PaymentError
from agripay.services.mpesa_gateway import QUERY_COMPLETED, QUERY_INDETERMINATE, MpesaGateway
from agripay.services.payment_store import PaymentIntentStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    intent: PaymentIntent
    status: str
    result_desc: Optional[str]


class Reconciler:
    """Settles intents by asking the provider when a callback is late or lost."""

    def __init__(self, store: PaymentIntentStore, gateway: MpesaGateway):
        self.store = store
        self.gateway = gateway

    async def reconcile(self, checkout_id: str, actor: str = "reconciler") -> ReconcileResult:
        intent = await self.store.find(checkout_id)
        if intent.is_terminal:
            return ReconcileResult(intent, intent.status, intent.result_desc)

        query = await self.gateway.query_status(checkout_id)
        if query.status == QUERY_INDETERMINATE:
            # provider still waiting on the payer; caller polls again later
            return ReconcileResult(intent, intent.status, query.result_desc)

        outcome = COMPLETED if query.status == QUERY_COMPLETED else FAILED
        result = await self.store.mark_terminal(
            checkout_id,
            outcome,
            raw_payload=query.raw,
            result_code=query.result_code,
            result_desc=query.result_desc,
            actor=actor,
        )
        if result.applied:
            counter = PAYMENT_SUCCESS if outcome == COMPLETED else PAYMENT_FAILURE
            counter.labels(source=actor).inc()
        # a concurrent callback may have won; report what is stored
        return ReconcileResult(result.intent, result.intent.status, result.intent.result_desc or query.result_desc)

    async def sweep(self, horizon_seconds: int, limit: int = 100, max_attempts: int = 3) -> Dict[str, int]:
        """Settle processing intents older than the polling horizon.

        Intents the provider still reports as in progress are cancelled, as are
        intents whose status query has failed on ``max_attempts`` sweeps
        for any reason other than connectivity.
        """
        cutoff = utcnow() - timedelta(seconds=horizon_seconds)
        stale = await self.store.list_stale(cutoff, limit=limit)
        counts = {"checked": 0, "settled": 0, "cancelled": 0, "errors": 0}
        for intent in stale:
            counts["checked"] += 1
            try:
                res = await self.reconcile(intent.checkout_id, actor="sweeper")
                if res.intent.is_terminal:
                    counts["settled"] += 1
                    continue
                desc = "Payment prompt expired without confirmation"
            except PaymentError as exc:
                counts["errors"] += 1
                logger.warning(
                    "sweep could not reconcile intent",
                    extra={"checkout_id": intent.checkout_id, "phone": intent.phone, "amount": intent.amount, "error": exc.message},
                )
                # provider outages do not count against the intent
                attempts = await self.store.record_reconcile_failure(
                    intent.id, exc.message, counts=not isinstance(exc, ConnectivityError)
                )
                if attempts < max_attempts:
                    continue
                desc = f"Payment status could not be confirmed: {exc.message}"

            cancelled = await self.store.mark_terminal(
                intent.checkout_id,
                CANCELLED,
                result_desc=desc,
                raw_payload=intent.raw_response,
                actor="sweeper",
            )
            if cancelled.applied:
                counts["cancelled"] += 1
                PAYMENT_FAILURE.labels(source="sweeper").inc()
        logger.info("stale intent sweep finished", extra=counts)
        return counts

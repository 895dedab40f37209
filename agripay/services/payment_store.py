"""
Payment intent persistence.

Each call runs in its own short transaction. Status changes are conditional
UPDATEs on the current status, so concurrent writers (duplicate callbacks,
a callback racing a status query) cannot both win and nothing is held locked
while the gateway is being called.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select as sa_select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from agripay.models.models import (
    FAILED,
    OPEN_STATUSES,
    PENDING,
    PROCESSING,
    TERMINAL_STATUSES,
    PaymentIntent,
    utcnow,
)
from agripay.services.audit import audit_intent
from agripay.services.exceptions import AlreadyAttached, NotFound

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    intent: PaymentIntent
    # False when another writer had already settled the intent
    applied: bool


class PaymentIntentStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._sessions = session_factory

    async def create(self, phone: str, amount: int, reference: Optional[str], description: Optional[str], currency: str = "KES", actor: str = "api", ip_address: Optional[str] = None) -> PaymentIntent:
        intent = PaymentIntent(
            phone=phone,
            amount=amount,
            currency=currency,
            reference=reference,
            description=description,
            status=PENDING,
        )
        async with self._sessions() as db:
            async with db.begin():
                db.add(intent)
                await db.flush()
                await audit_intent(db, intent.id, "create_intent", actor, detail={"phone": phone, "amount": amount, "reference": reference}, ip_address=ip_address)
        return intent

    async def attach_provider_ids(self, local_id: int, checkout_id: str, merchant_request_id: Optional[str], raw: Optional[Dict[str, Any]] = None, actor: str = "api") -> PaymentIntent:
        try:
            async with self._sessions() as db:
                async with db.begin():
                    upd = (
                        sa_update(PaymentIntent)
                        .where(PaymentIntent.id == local_id)
                        .where(PaymentIntent.status == PENDING)
                        .where(PaymentIntent.checkout_id.is_(None))
                        .values(
                            checkout_id=checkout_id,
                            merchant_request_id=merchant_request_id,
                            status=PROCESSING,
                            raw_response=raw,
                            updated_at=utcnow(),
                        )
                    )
                    result = await db.execute(upd)
                    if result.rowcount == 0:
                        existing = await db.get(PaymentIntent, local_id)
                        if existing is None:
                            raise NotFound(f"Payment intent {local_id} not found")
                        raise AlreadyAttached(f"Payment intent {local_id} already attached to {existing.checkout_id}")
                    await audit_intent(db, local_id, "attach_provider_ids", actor, detail={"checkout_id": checkout_id, "merchant_request_id": merchant_request_id})
        except IntegrityError as exc:
            # checkout id already used by another intent
            raise AlreadyAttached(f"Checkout id {checkout_id} already attached") from exc
        return await self.get(local_id)

    async def mark_terminal(
        self,
        checkout_id: str,
        outcome: str,
        receipt_id: Optional[str] = None,
        raw_payload: Any = None,
        result_code: Optional[int] = None,
        result_desc: Optional[str] = None,
        transaction_date: Optional[str] = None,
        actor: str = "system",
    ) -> TransitionResult:
        if outcome not in TERMINAL_STATUSES:
            raise ValueError(f"{outcome!r} is not a terminal status")

        now = utcnow()
        async with self._sessions() as db:
            async with db.begin():
                upd = (
                    sa_update(PaymentIntent)
                    .where(PaymentIntent.checkout_id == checkout_id)
                    .where(PaymentIntent.status.in_(OPEN_STATUSES))
                    .values(
                        status=outcome,
                        receipt_number=receipt_id,
                        raw_response=raw_payload,
                        result_code=result_code,
                        result_desc=result_desc,
                        transaction_date=transaction_date,
                        completed_at=now,
                        updated_at=now,
                    )
                )
                result = await db.execute(upd)
                applied = result.rowcount > 0
                if applied:
                    local_id = (await db.execute(sa_select(PaymentIntent.id).where(PaymentIntent.checkout_id == checkout_id))).scalar()
                    await audit_intent(db, local_id, f"mark_{outcome}", actor, detail={"checkout_id": checkout_id, "receipt": receipt_id, "result_code": result_code, "result_desc": result_desc})

        intent = await self.find(checkout_id)
        if applied:
            logger.info("intent settled", extra={"checkout_id": checkout_id, "status": outcome, "actor": actor, "phone": intent.phone, "amount": intent.amount})
        else:
            logger.info("intent already settled", extra={"checkout_id": checkout_id, "status": intent.status, "attempted": outcome, "actor": actor})
        return TransitionResult(intent=intent, applied=applied)

    async def fail_unattached(self, local_id: int, reason: str, actor: str = "api") -> bool:
        """Close an intent whose initiation failed before the provider issued a checkout id."""
        now = utcnow()
        async with self._sessions() as db:
            async with db.begin():
                upd = (
                    sa_update(PaymentIntent)
                    .where(PaymentIntent.id == local_id)
                    .where(PaymentIntent.status == PENDING)
                    .where(PaymentIntent.checkout_id.is_(None))
                    .values(status=FAILED, result_desc=reason, completed_at=now, updated_at=now)
                )
                result = await db.execute(upd)
                if result.rowcount:
                    await audit_intent(db, local_id, "initiation_failed", actor, detail={"reason": reason})
        return bool(result.rowcount)

    async def record_reconcile_failure(self, local_id: int, reason: str, counts: bool = True, actor: str = "sweeper") -> int:
        """Note a failed status query on a processing intent and return its attempt count.

        ``counts=False`` only moves the intent to the back of the sweep queue.
        """
        now = utcnow()
        values = {"last_reconciled_at": now}
        if counts:
            values["reconcile_attempts"] = PaymentIntent.reconcile_attempts + 1
        async with self._sessions() as db:
            async with db.begin():
                await db.execute(
                    sa_update(PaymentIntent)
                    .where(PaymentIntent.id == local_id)
                    .where(PaymentIntent.status == PROCESSING)
                    .values(**values)
                )
                attempts = (await db.execute(sa_select(PaymentIntent.reconcile_attempts).where(PaymentIntent.id == local_id))).scalar()
                if counts:
                    await audit_intent(db, local_id, "reconcile_failed", actor, detail={"reason": reason, "attempts": attempts})
        return attempts or 0

    async def get(self, local_id: int) -> PaymentIntent:
        async with self._sessions() as db:
            intent = await db.get(PaymentIntent, local_id)
        if intent is None:
            raise NotFound(f"Payment intent {local_id} not found")
        return intent

    async def find(self, checkout_id: str) -> PaymentIntent:
        async with self._sessions() as db:
            res = await db.execute(sa_select(PaymentIntent).where(PaymentIntent.checkout_id == checkout_id))
            intent = res.scalars().first()
        if intent is None:
            raise NotFound(f"No payment for checkout id {checkout_id}")
        return intent

    async def list_stale(self, older_than: datetime, limit: int = 100) -> List[PaymentIntent]:
        """Processing intents created before ``older_than``, least recently swept first."""
        last_seen = func.coalesce(PaymentIntent.last_reconciled_at, PaymentIntent.created_at)
        stmt = (
            sa_select(PaymentIntent)
            .where(PaymentIntent.status == PROCESSING)
            .where(PaymentIntent.created_at < older_than)
            .order_by(last_seen, PaymentIntent.id)
            .limit(limit)
        )
        async with self._sessions() as db:
            res = await db.execute(stmt)
            return list(res.scalars().all())

    async def list_intents(self, status: Optional[str] = None, limit: int = 50) -> List[PaymentIntent]:
        stmt = sa_select(PaymentIntent).order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc()).limit(limit)
        if status:
            stmt = stmt.where(PaymentIntent.status == status)
        async with self._sessions() as db:
            res = await db.execute(stmt)
            return list(res.scalars().all())

    async def summarize(self) -> Dict[str, Dict[str, int]]:
        stmt = sa_select(PaymentIntent.status, func.count(PaymentIntent.id), func.coalesce(func.sum(PaymentIntent.amount), 0)).group_by(PaymentIntent.status)
        async with self._sessions() as db:
            res = await db.execute(stmt)
            rows = res.all()
        return {status: {"count": int(count), "amount": int(total)} for status, count, total in rows}


_store: Optional[PaymentIntentStore] = None


def get_store() -> PaymentIntentStore:
    global _store
    if _store is None:
        from agripay.db.session import async_session

        _store = PaymentIntentStore(async_session)
    return _store

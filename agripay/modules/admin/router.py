from typing import Optional

from fastapi import APIRouter, Depends, Query

from agripay.auth.deps import admin_api_key
from agripay.models.models import COMPLETED, OPEN_STATUSES, TERMINAL_STATUSES
from agripay.schemas.payment import PaymentIntentView
from agripay.services.payment_store import PaymentIntentStore, get_store

router = APIRouter(dependencies=[Depends(admin_api_key)])


@router.get("/")
async def admin_root():
    return {"module": "admin", "status": "ok"}


@router.get("/intents")
async def list_intents(status: Optional[str] = None, limit: int = Query(50, ge=1, le=500), store: PaymentIntentStore = Depends(get_store)):
    intents = await store.list_intents(status=status, limit=limit)
    return [PaymentIntentView.model_validate(i).model_dump(by_alias=True) for i in intents]


@router.get("/reports/reconciliation")
async def reconciliation_report(store: PaymentIntentStore = Depends(get_store)):
    # open intents are charges whose outcome is still unknown locally
    by_status = await store.summarize()
    open_count = sum(by_status.get(s, {}).get("count", 0) for s in OPEN_STATUSES)
    settled_count = sum(by_status.get(s, {}).get("count", 0) for s in TERMINAL_STATUSES)
    return {
        "byStatus": by_status,
        "openCount": open_count,
        "settledCount": settled_count,
        "collectedAmount": by_status.get(COMPLETED, {}).get("amount", 0),
    }

from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from agripay.models.models import AuditLog

INTENT = "payment_intent"


async def audit_intent(
    db: AsyncSession,
    intent_ref: Union[int, str],
    action: str,
    actor: str,
    detail: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    """Append an audit row for a payment intent to the caller's transaction.

    ``intent_ref`` is the local id before a checkout id exists and the checkout
    id afterwards. Empty detail values are dropped so rows stay readable.
    """
    entry = AuditLog(
        actor=actor,
        action=action,
        object_type=INTENT,
        object_id=str(intent_ref),
        detail={k: v for k, v in (detail or {}).items() if v is not None} or None,
        ip_address=ip_address,
    )
    db.add(entry)
    return entry

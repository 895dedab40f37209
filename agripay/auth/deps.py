import hmac
import logging

from fastapi import Header, HTTPException, status

from agripay.config import settings

logger = logging.getLogger(__name__)


async def admin_api_key(x_api_key: str = Header(default=None, alias="X-API-KEY")) -> str:
    candidate = (x_api_key or "").strip()
    valid_keys = settings.admin_api_keys
    ok = bool(candidate) and any(hmac.compare_digest(candidate.encode(), k.encode()) for k in valid_keys)
    if not ok:
        logger.warning("admin api key rejected", extra={"header_present": bool(x_api_key), "configured_keys": len(valid_keys)})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API Key")
    return candidate

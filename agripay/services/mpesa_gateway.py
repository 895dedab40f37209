"""
M-Pesa Daraja gateway client.

The only module that talks to Safaricom. It owns the access-token cache,
builds the STK Push / STK Query envelopes and maps provider responses onto
the exceptions in ``agripay.services.exceptions``. Persisting the outcome is
the caller's job.
"""
import asyncio
import base64
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from agripay.config import settings
from agripay.metrics import GATEWAY_LATENCY, TOKEN_REFRESHES
from agripay.services.exceptions import (
    ConnectivityError,
    CredentialError,
    GatewayRejected,
    InvalidAmount,
    InvalidPhoneFormat,
    UnexpectedResponseError,
)

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Daraja answers an STK query with this error while the payer has not responded yet
IN_PROGRESS_ERROR_CODE = "500.001.1001"

DEFAULT_TOKEN_LIFETIME = 3600

# query outcomes
QUERY_COMPLETED = "completed"
QUERY_FAILED = "failed"
QUERY_INDETERMINATE = "indeterminate"


def normalize_phone(phone: Any, country_code: str = "254") -> str:
    """Return the canonical ``254XXXXXXXXX`` form or raise InvalidPhoneFormat."""
    if phone is None:
        raise InvalidPhoneFormat()
    digits = re.sub(r"\D", "", str(phone))
    if digits.startswith("0"):
        digits = digits[1:]
    if not digits.startswith(country_code):
        digits = country_code + digits
    if not re.fullmatch(rf"{country_code}[17]\d{{8}}", digits):
        raise InvalidPhoneFormat()
    return digits


def validate_amount(amount: Any, minimum: int = 1, maximum: int = 150000) -> int:
    # whole shillings only; bool is an int subclass and is not an amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Amount must be a whole number of KES")
    if amount < minimum or amount > maximum:
        raise InvalidAmount(f"Amount must be between KES {minimum:,} and KES {maximum:,}")
    return amount


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Lipa na M-Pesa Online password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


@dataclass
class AccessToken:
    value: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class TokenCache:
    """Process-wide bearer token holder with a single-flight refresh."""

    def __init__(self, safety_margin: float = 300, clock: Callable[[], float] = time.monotonic):
        self.safety_margin = safety_margin
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def peek(self) -> Optional[str]:
        token = self._token
        if token and token.is_valid(self._clock()):
            return token.value
        return None

    def invalidate(self) -> None:
        self._token = None

    async def get_or_refresh(self, fetch: Callable[[], Awaitable[Tuple[str, float]]]) -> str:
        cached = self.peek()
        if cached:
            return cached
        async with self._lock:
            # another caller may have refreshed while we waited
            cached = self.peek()
            if cached:
                return cached
            value, lifetime = await fetch()
            expires_at = self._clock() + max(float(lifetime) - self.safety_margin, 0)
            self._token = AccessToken(value=value, expires_at=expires_at)
            return value


@dataclass
class PushResult:
    checkout_id: str
    merchant_request_id: Optional[str]
    customer_message: Optional[str]
    response_description: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryResult:
    status: str
    result_code: Optional[int]
    result_desc: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _numeric(value: str):
    return int(value) if value.isdigit() else value


class MpesaGateway:
    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        callback_url: str,
        transaction_type: str = "CustomerPayBillOnline",
        token_cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_timeout: float = 10.0,
        push_timeout: float = 30.0,
        query_timeout: float = 15.0,
        min_amount: int = 1,
        max_amount: int = 150000,
        country_code: str = "254",
        utc_offset_hours: int = 3,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = str(shortcode)
        self.passkey = passkey
        self.callback_url = callback_url
        self.transaction_type = transaction_type
        self.token_timeout = token_timeout
        self.push_timeout = push_timeout
        self.query_timeout = query_timeout
        self.min_amount = min_amount
        self.max_amount = max_amount
        self.country_code = country_code
        self.tokens = token_cache or TokenCache()
        tz = timezone(timedelta(hours=utc_offset_hours))
        self._now = now or (lambda: datetime.now(tz))
        self._client = httpx.AsyncClient(base_url=self.base_url, transport=transport)

    @classmethod
    def from_settings(cls, cfg=settings, **overrides) -> "MpesaGateway":
        kwargs = dict(
            base_url=cfg.MPESA_BASE_URL,
            consumer_key=cfg.MPESA_CONSUMER_KEY,
            consumer_secret=cfg.MPESA_CONSUMER_SECRET,
            shortcode=cfg.MPESA_SHORTCODE,
            passkey=cfg.MPESA_PASSKEY,
            callback_url=cfg.MPESA_CALLBACK_URL,
            transaction_type=cfg.MPESA_TRANSACTION_TYPE,
            token_cache=TokenCache(safety_margin=cfg.MPESA_TOKEN_SAFETY_MARGIN_SECONDS),
            token_timeout=cfg.MPESA_TOKEN_TIMEOUT_SECONDS,
            push_timeout=cfg.MPESA_PUSH_TIMEOUT_SECONDS,
            query_timeout=cfg.MPESA_QUERY_TIMEOUT_SECONDS,
            min_amount=cfg.MPESA_MIN_AMOUNT,
            max_amount=cfg.MPESA_MAX_AMOUNT,
            country_code=cfg.MPESA_COUNTRY_CODE,
            utc_offset_hours=cfg.MPESA_UTC_OFFSET_HOURS,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    def normalize_phone(self, phone: Any) -> str:
        return normalize_phone(phone, self.country_code)

    def timestamp(self) -> str:
        return self._now().strftime("%Y%m%d%H%M%S")

    def password(self) -> Tuple[str, str]:
        """Return a fresh (timestamp, password) pair."""
        timestamp = self.timestamp()
        return timestamp, build_password(self.shortcode, self.passkey, timestamp)

    def check_configuration(self) -> Dict[str, bool]:
        return {
            "consumer_key": bool(self.consumer_key),
            "consumer_secret": bool(self.consumer_secret),
            "passkey": bool(self.passkey),
            "shortcode": bool(self.shortcode),
            "callback_url": bool(self.callback_url),
            "base_url": bool(self.base_url),
        }

    # -- transport -------------------------------------------------------

    async def _request(self, operation: str, method: str, path: str, timeout: float, **kwargs) -> httpx.Response:
        start = time.perf_counter()
        try:
            return await self._client.request(method, path, timeout=timeout, **kwargs)
        except httpx.TransportError as exc:
            logger.error("mpesa transport failure", extra={"operation": operation, "error": repr(exc)})
            if isinstance(exc, httpx.TimeoutException):
                raise ConnectivityError("M-Pesa service timeout") from exc
            raise ConnectivityError("Cannot connect to M-Pesa service") from exc
        finally:
            GATEWAY_LATENCY.labels(operation=operation).observe(time.perf_counter() - start)

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise UnexpectedResponseError(payload=resp.text) from exc
        if not isinstance(data, dict):
            raise UnexpectedResponseError(payload=data)
        return data

    # -- token -------------------------------------------------------------

    async def _fetch_token(self) -> Tuple[str, float]:
        if not self.consumer_key or not self.consumer_secret:
            TOKEN_REFRESHES.labels(result="unconfigured").inc()
            raise CredentialError("M-Pesa credentials missing")

        logger.info("requesting mpesa access token")
        resp = await self._request(
            "token",
            "GET",
            TOKEN_PATH,
            self.token_timeout,
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )
        if resp.status_code == 401:
            TOKEN_REFRESHES.labels(result="rejected").inc()
            raise CredentialError("Invalid M-Pesa credentials")
        if resp.status_code >= 400:
            TOKEN_REFRESHES.labels(result="error").inc()
            raise UnexpectedResponseError(payload=resp.text)

        data = self._json(resp)
        token = data.get("access_token")
        if not token:
            TOKEN_REFRESHES.labels(result="error").inc()
            raise UnexpectedResponseError("No access token received from M-Pesa", payload=data)

        lifetime = _as_int(data.get("expires_in")) or DEFAULT_TOKEN_LIFETIME
        TOKEN_REFRESHES.labels(result="ok").inc()
        return token, lifetime

    async def acquire_token(self) -> str:
        return await self.tokens.get_or_refresh(self._fetch_token)

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.acquire_token()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    # -- STK push ------------------------------------------------------------

    async def initiate_push(self, phone: Any, amount: Any, reference: str, description: str) -> PushResult:
        # validation happens before any network call, token included
        msisdn = self.normalize_phone(phone)
        amount = validate_amount(amount, self.min_amount, self.max_amount)

        headers = await self._auth_headers()
        timestamp, password = self.password()
        payload = {
            "BusinessShortCode": _numeric(self.shortcode),
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": self.transaction_type,
            "Amount": amount,
            "PartyA": int(msisdn),
            "PartyB": _numeric(self.shortcode),
            "PhoneNumber": int(msisdn),
            "CallBackURL": self.callback_url,
            "AccountReference": (reference or "AGRI-PAY")[:12],
            "TransactionDesc": (description or "AgriPay Payment")[:13],
        }

        logger.info("sending stk push", extra={"phone": msisdn, "amount": amount, "reference": reference})
        resp = await self._request("stk_push", "POST", STK_PUSH_PATH, self.push_timeout, json=payload, headers=headers)
        if resp.status_code == 401:
            self.tokens.invalidate()
            raise CredentialError("M-Pesa rejected the access token")

        data = self._json(resp)
        if resp.status_code >= 400 or str(data.get("ResponseCode")) != "0":
            message = data.get("errorMessage") or data.get("ResponseDescription") or GatewayRejected.default_message
            logger.warning(
                "stk push rejected",
                extra={"phone": msisdn, "amount": amount, "status_code": resp.status_code, "provider_message": message},
            )
            raise GatewayRejected(message, payload=data)

        checkout_id = data.get("CheckoutRequestID")
        if not checkout_id:
            raise UnexpectedResponseError("M-Pesa response lacks a CheckoutRequestID", payload=data)

        logger.info("stk push accepted", extra={"checkout_id": checkout_id, "phone": msisdn, "amount": amount})
        return PushResult(
            checkout_id=checkout_id,
            merchant_request_id=data.get("MerchantRequestID"),
            customer_message=data.get("CustomerMessage"),
            response_description=data.get("ResponseDescription"),
            raw=data,
        )

    # -- STK query -------------------------------------------------------------

    async def query_status(self, checkout_id: str) -> QueryResult:
        headers = await self._auth_headers()
        timestamp, password = self.password()
        payload = {
            "BusinessShortCode": _numeric(self.shortcode),
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_id,
        }

        resp = await self._request("stk_query", "POST", STK_QUERY_PATH, self.query_timeout, json=payload, headers=headers)
        if resp.status_code == 401:
            self.tokens.invalidate()
            raise CredentialError("M-Pesa rejected the access token")

        data = self._json(resp)
        if str(data.get("errorCode")) == IN_PROGRESS_ERROR_CODE:
            return QueryResult(QUERY_INDETERMINATE, None, data.get("errorMessage"), data)

        response_code = data.get("ResponseCode")
        if resp.status_code >= 400 or (response_code is not None and str(response_code) != "0"):
            message = data.get("errorMessage") or data.get("ResponseDescription") or "Failed to check transaction status"
            logger.warning("stk query rejected", extra={"checkout_id": checkout_id, "status_code": resp.status_code, "provider_message": message})
            raise GatewayRejected(message, payload=data)

        result_code = _as_int(data.get("ResultCode"))
        if result_code is None:
            logger.info("stk query without result code", extra={"checkout_id": checkout_id})
            return QueryResult(QUERY_INDETERMINATE, None, data.get("ResultDesc"), data)

        status = QUERY_COMPLETED if result_code == 0 else QUERY_FAILED
        logger.info("stk query result", extra={"checkout_id": checkout_id, "result_code": result_code, "status": status})
        return QueryResult(status, result_code, data.get("ResultDesc"), data)


_gateway: Optional[MpesaGateway] = None


def get_gateway() -> MpesaGateway:
    global _gateway
    if _gateway is None:
        _gateway = MpesaGateway.from_settings(settings)
    return _gateway


async def close_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None

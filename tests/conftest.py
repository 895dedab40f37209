"""Shared fixtures: a throwaway SQLite database per test and a fake Daraja API."""
import os

# must be set before agripay.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./agripay-test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

import agripay.models  # noqa: E402,F401
from agripay.db.base import Base  # noqa: E402
from agripay.db.session import make_engine, make_session_factory  # noqa: E402
from agripay.services.mpesa_gateway import (  # noqa: E402
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    TOKEN_PATH,
    MpesaGateway,
)
from agripay.services.payment_store import PaymentIntentStore  # noqa: E402

EAT = timezone(timedelta(hours=3))
FIXED_NOW = datetime(2026, 10, 19, 14, 30, 5, tzinfo=EAT)


class FakeDaraja:
    """httpx.MockTransport handler that records requests and replays canned responses.

    A canned response is a ``(status_code, json_body)`` tuple, an exception
    instance to raise, or a callable taking the request.
    """

    def __init__(self):
        self.requests = []
        self.responses = {
            TOKEN_PATH: (200, {"access_token": "tok-1", "expires_in": "3599"}),
            STK_PUSH_PATH: (200, {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191020261430051234",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            }),
            STK_QUERY_PATH: (200, {
                "ResponseCode": "0",
                "ResponseDescription": "The service request has been accepted successsfully",
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191020261430051234",
                "ResultCode": "0",
                "ResultDesc": "The service request is processed successfully.",
            }),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        canned = self.responses.get(request.url.path, (404, {"errorMessage": "not found"}))
        if isinstance(canned, Exception):
            raise canned
        if callable(canned):
            return canned(request)
        status_code, body = canned
        return httpx.Response(status_code, json=body)

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def fake_daraja():
    return FakeDaraja()


@pytest.fixture
def make_gateway(fake_daraja):
    def _make(**overrides):
        kwargs = dict(
            base_url="https://sandbox.daraja.test",
            consumer_key="key",
            consumer_secret="secret",
            shortcode="174379",
            passkey="passkey",
            callback_url="https://agripay.test/payments/mpesa/callback",
            transport=httpx.MockTransport(fake_daraja),
            now=lambda: FIXED_NOW,
        )
        kwargs.update(overrides)
        return MpesaGateway(**kwargs)

    return _make


@pytest.fixture
def gateway(make_gateway):
    return make_gateway()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'agripay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return PaymentIntentStore(session_factory)


@pytest.fixture
def stk_success_callback():
    def _build(checkout_id="ws_CO_191020261430051234", receipt="ABC123", amount=500):
        return {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "29115-34620561-1",
                    "CheckoutRequestID": checkout_id,
                    "ResultCode": 0,
                    "ResultDesc": "The service request is processed successfully.",
                    "CallbackMetadata": {
                        "Item": [
                            {"Name": "Amount", "Value": amount},
                            {"Name": "MpesaReceiptNumber", "Value": receipt},
                            {"Name": "Balance"},
                            {"Name": "TransactionDate", "Value": 20261019143512},
                            {"Name": "PhoneNumber", "Value": 254712345678},
                        ]
                    },
                }
            }
        }

    return _build


@pytest.fixture
def stk_failure_callback():
    def _build(checkout_id="ws_CO_191020261430051234", code=1032, desc="Request cancelled by user"):
        return {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "29115-34620561-1",
                    "CheckoutRequestID": checkout_id,
                    "ResultCode": code,
                    "ResultDesc": desc,
                }
            }
        }

    return _build

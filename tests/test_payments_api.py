import logging

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from agripay.config import settings
from agripay.main import app
from agripay.services.mpesa_gateway import STK_PUSH_PATH, STK_QUERY_PATH, get_gateway
from agripay.services.payment_store import get_store

CHECKOUT_ID = "ws_CO_191020261430051234"


class BrokenWritesStore:
    """Delegates to a real store but fails the named write with a database error."""

    def __init__(self, store, failing):
        self._store = store
        self._failing = failing

    def __getattr__(self, name):
        attr = getattr(self._store, name)
        if name != self._failing:
            return attr

        async def broken(*args, **kwargs):
            raise OperationalError("UPDATE payment_intents", {}, Exception("database is locked"))

        return broken


@pytest_asyncio.fixture
async def client(store, gateway):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    await gateway.aclose()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["x-trace-id"]


@pytest.mark.asyncio
async def test_stk_push_creates_processing_intent(client, store):
    resp = await client.post(
        "/payments/mpesa/stk-push",
        json={"phone": "0712345678", "amount": 500, "reference": "ORDER-42", "description": "Maize seed"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["checkoutId"] == CHECKOUT_ID
    assert body["merchantRequestId"] == "29115-34620561-1"
    assert body["customerMessage"] == "Success. Request accepted for processing"
    assert body["phone"] == "254712345678"
    assert body["amount"] == 500

    intent = await store.find(CHECKOUT_ID)
    assert intent.status == "processing"
    assert intent.phone == "254712345678"
    assert intent.id == body["intentId"]


@pytest.mark.asyncio
async def test_stk_push_rejects_amount_without_calling_provider(client, store, fake_daraja):
    resp = await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": 150001})

    assert resp.status_code == 400
    assert "between" in resp.json()["message"]
    assert fake_daraja.requests == []
    assert await store.list_intents() == []


@pytest.mark.asyncio
async def test_stk_push_rejects_bad_phone(client, fake_daraja):
    resp = await client.post("/payments/mpesa/stk-push", json={"phone": "12345", "amount": 100})
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("Invalid phone number")
    assert fake_daraja.requests == []


@pytest.mark.asyncio
async def test_malformed_body_is_a_400(client):
    resp = await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": "lots"})
    assert resp.status_code == 400
    assert "amount" in resp.json()["message"]


@pytest.mark.asyncio
async def test_rejected_push_leaves_no_provider_id(client, store, fake_daraja):
    fake_daraja.responses[STK_PUSH_PATH] = (400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})

    resp = await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": 10})

    assert resp.status_code == 400
    assert resp.json() == {"message": "Bad Request - Invalid Amount"}
    [intent] = await store.list_intents()
    assert intent.status == "failed"
    assert intent.checkout_id is None


@pytest.mark.asyncio
async def test_provider_unreachable_is_a_500(client, store, fake_daraja):
    fake_daraja.responses[STK_PUSH_PATH] = httpx.ConnectError("Connection refused")

    resp = await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": 10})

    assert resp.status_code == 500
    assert resp.json() == {"message": "Cannot connect to M-Pesa service"}
    [intent] = await store.list_intents()
    assert intent.checkout_id is None


@pytest.mark.asyncio
async def test_callback_then_status(client, store, stk_success_callback, fake_daraja):
    await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": 500})

    ack = await client.post("/payments/mpesa/callback", json=stk_success_callback(receipt="ABC123"))
    assert ack.status_code == 200
    assert ack.json() == {"ResultCode": 0, "ResultDesc": "Success"}

    intent = await store.find(CHECKOUT_ID)
    assert intent.status == "completed"
    assert intent.receipt_number == "ABC123"

    status = await client.post("/payments/mpesa/status", json={"checkoutId": CHECKOUT_ID})
    assert status.status_code == 200
    assert status.json()["status"] == "completed"
    # already settled, so the provider was not asked
    assert fake_daraja.calls(STK_QUERY_PATH) == []


@pytest.mark.asyncio
async def test_callback_with_unparseable_body_is_acknowledged(client):
    resp = await client.post("/payments/mpesa/callback", content=b"not json", headers={"content-type": "application/json"})
    assert resp.status_code == 200
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Success"}


@pytest.mark.asyncio
async def test_callback_requires_shared_secret_when_configured(client, monkeypatch, stk_success_callback):
    monkeypatch.setattr(settings, "MPESA_CALLBACK_SECRET", "s3cret")

    denied = await client.post("/payments/mpesa/callback", json=stk_success_callback())
    assert denied.status_code == 403

    allowed = await client.post("/payments/mpesa/callback?token=s3cret", json=stk_success_callback())
    assert allowed.status_code == 200

    header = await client.post("/payments/mpesa/callback", json=stk_success_callback(), headers={"X-Callback-Token": "s3cret"})
    assert header.status_code == 200


@pytest.mark.asyncio
async def test_callback_source_allowlist(client, monkeypatch, stk_success_callback):
    monkeypatch.setattr(settings, "MPESA_CALLBACK_ALLOWED_IPS", "196.201.214.200, 196.201.214.206")
    resp = await client.post("/payments/mpesa/callback", json=stk_success_callback())
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_status_polls_provider_for_processing_intent(client, store, fake_daraja):
    await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": 500})
    fake_daraja.responses[STK_QUERY_PATH] = (
        500,
        {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
    )

    resp = await client.post("/payments/mpesa/status", json={"checkoutId": CHECKOUT_ID})

    assert resp.status_code == 200
    assert resp.json() == {"status": "processing", "resultDesc": "The transaction is being processed"}


@pytest.mark.asyncio
async def test_status_unknown_checkout(client):
    resp = await client.post("/payments/mpesa/status", json={"checkoutId": "ws_missing"})
    assert resp.status_code == 404
    assert "message" in resp.json()


@pytest.mark.asyncio
async def test_get_intent(client):
    await client.post("/payments/mpesa/stk-push", json={"phone": "+254712345678", "amount": 75, "reference": "ORDER-9"})

    resp = await client.get(f"/payments/mpesa/intents/{CHECKOUT_ID}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "processing"
    assert body["amount"] == 75
    assert body["reference"] == "ORDER-9"

    missing = await client.get("/payments/mpesa/intents/ws_missing")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_validate_phone(client):
    ok = await client.post("/payments/mpesa/validate-phone", json={"phone": "0712 345 678"})
    assert ok.json() == {"valid": True, "formatted": "254712345678"}

    bad = await client.post("/payments/mpesa/validate-phone", json={"phone": "0812345678"})
    assert bad.json() == {"valid": False, "formatted": None}


@pytest.mark.asyncio
async def test_config_check(client):
    resp = await client.get("/payments/mpesa/test-config")
    assert resp.status_code == 200
    assert resp.json()["configured"] is True
    assert resp.json()["tokenAcquired"] is True


@pytest.mark.asyncio
async def test_admin_report_requires_api_key(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEYS", "k1,k2")
    await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": 500})

    assert (await client.get("/admin/reports/reconciliation")).status_code == 401

    resp = await client.get("/admin/reports/reconciliation", headers={"X-API-KEY": "k2"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["openCount"] == 1
    assert body["byStatus"]["processing"] == {"count": 1, "amount": 500}
    assert body["collectedAmount"] == 0


@pytest.mark.asyncio
async def test_push_accepted_but_not_recorded_is_fatal(client, store, fake_daraja, caplog):
    app.dependency_overrides[get_store] = lambda: BrokenWritesStore(store, "attach_provider_ids")
    caplog.set_level(logging.CRITICAL, logger="agripay.modules.payments.router")

    resp = await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": 500})

    assert resp.status_code == 500
    assert resp.json() == {"message": "Payment request was sent but could not be recorded"}
    assert len(fake_daraja.calls(STK_PUSH_PATH)) == 1
    [record] = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert record.checkout_id == CHECKOUT_ID
    assert record.amount == 500


@pytest.mark.asyncio
async def test_failed_push_still_answers_when_intent_cannot_be_closed(client, store, fake_daraja):
    app.dependency_overrides[get_store] = lambda: BrokenWritesStore(store, "fail_unattached")
    fake_daraja.responses[STK_PUSH_PATH] = (400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})

    resp = await client.post("/payments/mpesa/stk-push", json={"phone": "0712345678", "amount": 10})

    assert resp.status_code == 400
    assert resp.json() == {"message": "Bad Request - Invalid Amount"}
    [intent] = await store.list_intents()
    assert intent.status == "pending"
    assert intent.checkout_id is None

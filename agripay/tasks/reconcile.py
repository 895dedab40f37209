import asyncio

from celery.utils.log import get_task_logger
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import NullPool

from agripay.celery_app import celery_app
from agripay.config import settings
from agripay.db.session import make_engine, make_session_factory
from agripay.services.mpesa_gateway import MpesaGateway
from agripay.services.payment_store import PaymentIntentStore
from agripay.services.reconciliation import Reconciler

logger = get_task_logger(__name__)


async def _sweep(horizon_seconds: int, limit: int, max_attempts: int) -> dict:
    # every task run gets its own event loop, so no pooled connections may outlive it
    engine = make_engine(poolclass=NullPool)
    gateway = MpesaGateway.from_settings(settings)
    try:
        store = PaymentIntentStore(make_session_factory(engine))
        return await Reconciler(store, gateway).sweep(horizon_seconds, limit=limit, max_attempts=max_attempts)
    finally:
        await gateway.aclose()
        await engine.dispose()


@celery_app.task(bind=True, autoretry_for=(OperationalError, ConnectionError), retry_backoff=True, retry_backoff_max=300, max_retries=3)
def sweep_stale_intents(self, horizon_seconds: int = None, limit: int = 100):
    """Settle or cancel intents still processing after the polling horizon."""
    horizon = horizon_seconds or settings.RECONCILE_HORIZON_SECONDS
    counts = asyncio.run(_sweep(horizon, limit, settings.RECONCILE_MAX_ATTEMPTS))
    logger.info("sweep_stale_intents: %s", counts)
    return counts

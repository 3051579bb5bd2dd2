"""
Venue Relay — Main Application

One FastAPI service: inbound transport (webhook route or long poller),
inbound worker and outbox worker, all in this process.
"""
import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from telegram import Bot

from venue_relay import metrics
from venue_relay.config import settings
from venue_relay.database import Base, async_session, engine
from venue_relay.services.dialog_state import DialogStateStore
from venue_relay.services.idempotency import IdempotencyStore
from venue_relay.services.inbound_queue import InboundUpdateQueue
from venue_relay.services.notification_guard import NotificationClaimGuard
from venue_relay.services.outbox import OutboxEnqueuer, OutboxStore
from venue_relay.services.rate_limiter import RateLimiter
from venue_relay.services.staff_notifier import StaffChatNotifier
from venue_relay.telegram.api_client import TelegramApiClient
from venue_relay.telegram.long_poller import LongPoller
from venue_relay.telegram.router import BotRouter
from venue_relay.utils.redact import sanitize_for_log
from venue_relay.webhooks.router_factory import create_webhook_router
from venue_relay.workers.inbound import InboundWorker, InboundWorkerConfig
from venue_relay.workers.outbox import OutboxWorker, OutboxWorkerConfig

# --- Logging ---
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
# httpx logs every request URL, and the URL carries the bot token
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

# --- Sentry ---
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        environment="development" if settings.DEBUG else "production",
    )
    logger.info("Sentry initialized")


VERSION = "0.1.0"

inbound_queue = InboundUpdateQueue()
outbox_store = OutboxStore()


def inbound_config() -> InboundWorkerConfig:
    return InboundWorkerConfig(
        poll_interval=settings.INBOUND_POLL_INTERVAL_MS / 1000,
        batch_size=settings.INBOUND_BATCH_SIZE,
        max_attempts=settings.INBOUND_MAX_ATTEMPTS,
        visibility_timeout=settings.INBOUND_VISIBILITY_TIMEOUT_S,
        base_backoff=settings.INBOUND_BASE_BACKOFF_MS / 1000,
        max_backoff=settings.INBOUND_MAX_BACKOFF_MS / 1000,
        jitter=settings.BACKOFF_JITTER,
    )


def outbox_config() -> OutboxWorkerConfig:
    return OutboxWorkerConfig(
        poll_interval=settings.OUTBOX_POLL_INTERVAL_MS / 1000,
        batch_size=settings.OUTBOX_BATCH_SIZE,
        visibility_timeout=settings.OUTBOX_VISIBILITY_TIMEOUT_S,
        max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
        max_concurrency=settings.OUTBOX_MAX_CONCURRENCY,
        base_backoff=settings.OUTBOX_BASE_BACKOFF_S,
        max_backoff=settings.OUTBOX_MAX_BACKOFF_S,
        jitter=settings.BACKOFF_JITTER,
    )


def build_staff_notifier() -> StaffChatNotifier:
    """Staff chat notifier for order code; call it inside the order's transaction."""
    return StaffChatNotifier(
        NotificationClaimGuard(IdempotencyStore(), service_id=settings.SERVICE_ID),
        OutboxEnqueuer(outbox_store),
    )


# --- Lifespan: tables, bot, workers ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Venue Relay (mode=%s)...", settings.TG_MODE)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured.")

    bot = Bot(token=settings.TG_TOKEN)
    await bot.initialize()

    router = BotRouter(
        idempotency=IdempotencyStore(),
        enqueuer=OutboxEnqueuer(outbox_store),
        dialog_state=DialogStateStore(),
        service_id=settings.SERVICE_ID,
        bot=bot,
    )
    rate_limiter = RateLimiter(
        max_per_second=settings.RATE_LIMIT_PER_SECOND,
        per_chat_interval=settings.RATE_LIMIT_PER_CHAT_INTERVAL_MS / 1000,
        max_wait=settings.RATE_LIMIT_MAX_WAIT_S,
    )
    workers = [
        InboundWorker(async_session, inbound_queue, router, inbound_config()),
        OutboxWorker(
            async_session, outbox_store, TelegramApiClient(bot), rate_limiter, outbox_config()
        ),
    ]
    if settings.TG_MODE == "long_polling":
        # getUpdates is refused while a webhook is set
        await bot.delete_webhook()
        workers.append(
            LongPoller(bot, async_session, inbound_queue, timeout=settings.TG_LONG_POLL_TIMEOUT)
        )

    for worker in workers:
        worker.start()
    app.state.workers = workers
    app.state.staff_notifier = build_staff_notifier()
    yield

    logger.info("Shutting down Venue Relay...")
    for worker in reversed(workers):
        await worker.stop()
    await bot.shutdown()
    await engine.dispose()


# --- App ---
app = FastAPI(
    title="Venue Relay",
    version=VERSION,
    lifespan=lifespan,
)


# --- Health check ---
@app.get("/health")
async def health():
    workers = getattr(app.state, "workers", [])
    return {
        "status": "ok",
        "version": VERSION,
        "mode": settings.TG_MODE,
        "workers": {w.name: w.running for w in workers},
    }


# --- Metrics ---
@app.get("/metrics")
async def metrics_endpoint():
    try:
        async with async_session() as session:
            metrics.QUEUE_DEPTH.labels(queue="inbound").set(
                await inbound_queue.queue_depth(session)
            )
            metrics.QUEUE_DEPTH.labels(queue="outbox").set(
                await outbox_store.queue_depth(session)
            )
    except Exception as e:
        # serve the last known values
        logger.warning("Queue depth refresh failed: %s", sanitize_for_log(str(e)))
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


# --- Webhook router ---
if settings.TG_MODE == "webhook":
    if not settings.TG_WEBHOOK_SECRET:
        logger.warning("TG_WEBHOOK_SECRET is empty: webhook requests are not authenticated")
    app.include_router(
        create_webhook_router(
            path=settings.TG_WEBHOOK_PATH,
            webhook_secret=settings.TG_WEBHOOK_SECRET,
            queue=inbound_queue,
        )
    )
    logger.info("Webhook router registered: %s", settings.TG_WEBHOOK_PATH)

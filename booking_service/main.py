import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import models
from .config import settings
from .database import engine
from .errors import BookingServiceError
from .notifications import MailClient, NotificationDispatcher
from .outbox_poller import run_outbox_poller
from .projections import TAG_FIELDS
from .payments import StripePaymentGateway
from .routers import booking_router, user_router
from .search_index import SearchIndex

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter

# Setup logger
logger = logging.getLogger("booking_service")

# Create database tables on startup
models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting background tasks...")

    # Search documents and rate-limit counters share one Redis
    redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    search_index = SearchIndex(redis_client, prefix=settings.SEARCH_INDEX_PREFIX, tag_fields=TAG_FIELDS)
    try:
        await search_index.ensure_indexes()
    except Exception as e:
        # Retried lazily on the first query
        logger.error(f"Failed to create search indexes: {e}")
    mail_client = MailClient(settings.MAIL_API_URL, settings.MAIL_API_KEY, timeout=settings.MAIL_TIMEOUT_SECONDS)

    app.state.search_index = search_index
    app.state.dispatcher = NotificationDispatcher(mail_client)
    app.state.payment_gateway = StripePaymentGateway(settings.STRIPE_API_KEY, currency=settings.PAYMENT_CURRENCY)

    # Start the outbox poller as a background task
    poller_task = asyncio.create_task(run_outbox_poller(search_index))

    yield  # The application is now running

    # --- Code to run on shutdown ---
    logger.info("Shutting down background tasks...")

    poller_task.cancel()
    try:
        await poller_task
    except asyncio.CancelledError:
        logger.info("Outbox poller task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during outbox poller shutdown: {e}")

    await mail_client.aclose()
    await redis_client.aclose()


# Create the FastAPI app instance, passing the lifespan manager
app = FastAPI(
    title="Catering Booking Service API",
    description="Handles catering bookings, payments and booking notifications.",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(BookingServiceError)
async def booking_service_error_handler(request: Request, exc: BookingServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(booking_router.router)
app.include_router(user_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Catering Booking Service"}

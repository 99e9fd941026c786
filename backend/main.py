import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from config import settings
from database import connect_db, close_db
from services.notification_service import EventNotifier
from services.shop_service import reopen_elapsed_closures

# Routers
from routers import orders, deliveries, wallets, admin, webhooks, events

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


async def _reopen_elapsed_closures_loop() -> None:
    """
    Rouvre périodiquement les commerces et articles dont la fermeture
    temporaire (closed_until / unavailable_until) est échue.
    """
    while True:
        await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)
        try:
            await reopen_elapsed_closures()
        except Exception as exc:
            logger.error(f"Erreur réouverture automatique : {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await connect_db()
    notifier = EventNotifier()
    await notifier.start()
    app.state.notifier = notifier
    task = asyncio.create_task(_reopen_elapsed_closures_loop())
    logger.info("FoodRun API started")
    yield
    # Shutdown
    task.cancel()
    await notifier.stop()
    await close_db()
    logger.info("FoodRun API stopped")


app = FastAPI(
    title="FoodRun API",
    description="Marketplace de livraison de repas : commandes, courses et règlements",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else [settings.BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers publics (signature vérifiée)
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])

# Routers avec auth
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(deliveries.router, prefix="/api/deliveries", tags=["Deliveries"])
app.include_router(wallets.router, prefix="/api/wallets", tags=["Wallets"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])
app.include_router(events.router, prefix="/ws", tags=["Events"])


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "app": "foodrun", "version": "1.0.0"}

from coin_ledger.routes import ledger_router, afk_router
from coin_ledger.accrual import AccrualSessionManager
from coin_ledger.config import AFK_INTERVAL_SECONDS
from coin_ledger.identity import PanelIdentityProvider
from coin_ledger.ledger_service import LedgerService
from coin_ledger.notifications import build_notifier
from coin_ledger.plans import PlanCatalog
from coin_ledger.store import LedgerStore
from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from datetime import datetime, timezone

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def build_store() -> LedgerStore:
    """Store selected by LEDGER_BACKEND (mongo by default, or memory)."""
    backend = os.environ.get("LEDGER_BACKEND", "mongo").lower()
    if backend == "memory":
        logger.warning("LEDGER_BACKEND=memory: balances are lost on restart")
        return LedgerStore.in_memory()

    # Check database connection first - fail fast if database is unavailable
    from database import check_db_connection, get_database
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    db = get_database()
    await db.ledger_journal.create_index([("email", 1), ("timestamp", -1)])
    await db.ledger_journal.create_index("request_id", unique=True)
    return LedgerStore.from_motor(db)


def create_app(
    store: LedgerStore = None,
    catalog: PlanCatalog = None,
    notifier=None,
    accrual_interval: int = None,
    tick_seconds: float = 1.0
) -> FastAPI:
    app = FastAPI(title=os.environ.get("APP_NAME", "Coin Ledger"))

    # Create a router with the /api prefix
    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health_check():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    api_router.include_router(ledger_router)
    api_router.include_router(afk_router)
    app.include_router(api_router)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=[origin.strip() for origin in os.environ.get(
            'CORS_ORIGINS', 'http://localhost:3000').split(',')],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup():
        ledger_store = store or await build_store()
        identity = PanelIdentityProvider() if os.environ.get("PROVIDER_URL") else None

        ledger = LedgerService(
            ledger_store,
            catalog=catalog or PlanCatalog.load(),
            notifier=notifier or build_notifier(),
            identity=identity
        )
        accrual = AccrualSessionManager(
            ledger,
            interval=accrual_interval or AFK_INTERVAL_SECONDS,
            tick_seconds=tick_seconds
        )
        accrual.start()

        app.state.ledger = ledger
        app.state.accrual = accrual
        logger.info(f"Coin ledger started with {len(ledger.catalog)} plans")

    @app.on_event("shutdown")
    async def shutdown():
        accrual = getattr(app.state, "accrual", None)
        if accrual is not None:
            await accrual.stop()
        ledger = getattr(app.state, "ledger", None)
        if ledger is not None:
            await ledger.notifier.drain()

        from database import close_database
        close_database()
        logger.info("Coin ledger stopped")

    return app


app = create_app()

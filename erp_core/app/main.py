import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .db import create_db_and_tables
from .auth import router as auth_router
from .users import router as users_router
from .routers.items import router as items_router
from .routers.costing import router as costing_router
from .routers.orders import router as orders_router
from .routers.invoices import router as invoices_router
from .routers.returns import router as returns_router
from .routers.parties import router as parties_router
from .routers.treasuries import router as treasuries_router
from .routers.stocktaking import router as stocktaking_router
from .routers.reports import router as reports_router

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="ERP Core",
        description="Inventory, manufacturing, invoicing and treasury for a small manufacturer",
        version="1.0.0"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(users_router)

    app.include_router(items_router)
    app.include_router(costing_router)
    app.include_router(orders_router)
    app.include_router(invoices_router)
    app.include_router(returns_router)
    app.include_router(parties_router)
    app.include_router(treasuries_router)
    app.include_router(stocktaking_router)
    app.include_router(reports_router)

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def on_startup():
        logger.info("Creating database tables at startup...")
        create_db_and_tables()
        logger.info(
            "Database ready (allow_negative_stock=%s)", settings.allow_negative_stock
        )

    return app


app = create_app()

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, status

from app.api.v1.inventory import router as inventory_router
from app.api.v1.menu import router as menu_router
from app.api.v1.orders import router as orders_router
from app.core.config import ADMIN_TOKEN, PROJECT_NAME, VERSION
from app.core.container import Services, build_services
from app.core.db import close_db, init_db
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.security import require_admin

log = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None, admin_token: Optional[str] = ADMIN_TOKEN) -> FastAPI:
    """
    Builds the application. When `services` is given (tests) the database lifecycle is
    skipped and the container is used as is.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles startup and shutdown events."""
        log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
        if services is None:
            await init_db()  # Connect to DB and generate schemas
            app.state.services = build_services()
        yield
        if services is None:
            await app.state.services.aclose()
            await close_db()
        else:
            await services.orders.drain()
        log.info(f"{PROJECT_NAME} stopped.")

    app = FastAPI(
        title=PROJECT_NAME,
        version=VERSION,
        lifespan=lifespan,
        # Configure API documentation and paths
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.admin_token = admin_token
    if services is not None:
        app.state.services = services

    # Include routers for modular API structure
    app.include_router(menu_router, prefix="/api/v1/menu", tags=["Menu"])
    app.include_router(orders_router, prefix="/api/v1/orders", tags=["Order Management"])
    app.include_router(
        inventory_router,
        prefix="/api/v1/inventory",
        tags=["Inventory Administration"],
        dependencies=[Depends(require_admin)],
    )

    setup_exception_handlers(app)

    @app.get("/health", status_code=status.HTTP_200_OK)
    async def health_check():
        """Simple health check endpoint."""
        return {"status": "ok", "app_name": PROJECT_NAME}

    return app


app = create_app()

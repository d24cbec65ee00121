import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .database import build_engine, build_session_factory
from .errors import ShopError
from .gateway import StripeGateway
from .logging_config import configure_logging
from .messaging import EventPublisher
from .models import Base
from .routers import cart_router, inventory_router, order_router, payment_router, product_router
from .sweeper import start_sweeper_in_thread, stop_sweeper

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[sessionmaker] = None,
    gateway=None,
    publisher: Optional[EventPublisher] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    if session_factory is None:
        session_factory = build_session_factory(build_engine(settings))

    app = FastAPI(
        title="E-commerce Core",
        description="Inventory, order and payment service for the e-commerce application",
        version="1.0.0",
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.gateway = gateway or StripeGateway(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        timeout=settings.gateway_timeout_seconds,
    )
    app.state.publisher = publisher or EventPublisher(settings.rabbitmq_url, settings.events_exchange)
    app.state.sweeper = None

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ShopError)
    async def _shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request failed", extra={"path": request.url.path, "error": exc.code})
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

    # Include routers
    app.include_router(product_router.router)
    app.include_router(cart_router.router)
    app.include_router(order_router.router)
    app.include_router(payment_router.router)
    app.include_router(inventory_router.router)

    @app.on_event("startup")
    def _startup() -> None:
        configure_logging(settings.log_level)
        # Create database tables
        Base.metadata.create_all(bind=session_factory.kw["bind"])
        if settings.reservation_sweep_seconds > 0:
            app.state.sweeper = start_sweeper_in_thread(
                session_factory,
                interval_seconds=settings.reservation_sweep_seconds,
            )

    @app.on_event("shutdown")
    def _shutdown() -> None:
        stop_sweeper(app.state.sweeper)
        app.state.sweeper = None

    @app.get("/")
    def root():
        return {
            "service": "E-commerce Core",
            "status": "running",
            "version": "1.0.0",
        }

    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "service": "ecom-core",
        }

    return app


app = create_app()

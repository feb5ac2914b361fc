import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app import config
from app.database import Base, SessionLocal, engine
from app.exceptions import PaymentError
from app.routers import subscription, webhooks
from app.services.razorpay_client import RazorpayClient
from app.services.subscription_jobs import SubscriptionJobScheduler
from app.services.webhook_dispatcher import WebhookDispatcher

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    razorpay_client: Optional[RazorpayClient] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    webhook_secret: Optional[str] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = razorpay_client or RazorpayClient.from_env()
        if not client.is_configured:
            logger.warning("Razorpay credentials missing; checkout endpoints will return 503.")
        elif config.RAZORPAY_VERIFY_CREDENTIALS_ON_STARTUP and not client.verify_credentials():
            logger.error("Razorpay credentials rejected by gateway.")

        dispatcher = WebhookDispatcher(session_factory=session_factory, client=client)
        dispatcher.start()
        scheduler = SubscriptionJobScheduler(session_factory=session_factory)
        if start_scheduler:
            scheduler.start()

        app.state.razorpay_client = client
        app.state.razorpay_webhook_secret = webhook_secret
        app.state.webhook_dispatcher = dispatcher
        try:
            yield
        finally:
            scheduler.stop()
            dispatcher.stop()
            if razorpay_client is None:
                client.close()

    app = FastAPI(
        title="Resume Builder Billing",
        description="Payments, subscriptions and credits for the resume builder",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, replace with specific origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(subscription.router)
    app.include_router(webhooks.router)

    @app.get("/health")
    def health_check():
        return {"status": "healthy"}

    return app


# Create database tables
Base.metadata.create_all(bind=engine)

app = create_app()

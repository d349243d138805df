# app/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import settings
from app.dependencies import build_services
from app.errors import PaymentServiceError
from app.routes import booking, payments

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PaymentServiceError)
    async def payment_service_error_handler(request: Request, exc: PaymentServiceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={
                "error": {
                    "message": f"{location}: {message}" if location else message,
                    "code": "validation_error",
                    "type": "invalid_request_error",
                }
            },
        )


def create_app(services=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        logger.info(
            f"Payment mode: {settings.PAYMENT_MODE}; "
            f"webhook verification: {'on' if settings.STRIPE_WEBHOOK_SECRET else 'OFF'}"
        )
        if not settings.STRIPE_SECRET_KEY:
            logger.error("STRIPE_SECRET_KEY is missing. Payments will not work.")
        yield

    app = FastAPI(
        title="Three Degrees East Bookings",
        version="1.0.0",
        description="Retreat booking payments and confirmation",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    register_exception_handlers(app)

    # Mount routes
    app.include_router(payments.router, tags=["Payments"])
    app.include_router(booking.router, prefix="/api/bookings", tags=["Bookings"])

    @app.get("/")
    def root():
        return {"message": "Welcome to ThreeDegree API"}

    return app


app = create_app()

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from promptpay_checkout.config import Settings, get_settings
from promptpay_checkout import models  # noqa: F401  registers the tables
from promptpay_checkout.database import Base, engine
from promptpay_checkout.errors import CheckoutError, GatewayError
from promptpay_checkout.routes import cart_router, orders_router, payment_router, sandbox_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(title="PromptPay Checkout Service")

    app.include_router(payment_router)
    # manual PAID override only exists outside production
    if not settings.is_production:
        app.include_router(sandbox_router)
    app.include_router(orders_router)
    app.include_router(cart_router)

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if isinstance(exc, GatewayError):
            logger.error("Gateway error on %s: %s (upstream %s)", request.url.path, exc.message, exc.upstream_status)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = []
        for error in exc.errors():
            # drop the leading "query" / "body" / "path" location
            field = ".".join(str(loc) for loc in error.get("loc", ())[1:])
            details.append({"field": field, "message": error.get("msg", "Validation error")})
        logger.warning("Validation error on %s: %s", request.url.path, details)
        message = f"Invalid {details[0]['field']}" if details and details[0]["field"] else "Invalid request"
        return JSONResponse(status_code=400, content={"message": message, "details": details})

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        content = {"message": "Internal Server Error"}
        if not settings.is_production:
            content["type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


Base.metadata.create_all(bind=engine)

app = create_app()

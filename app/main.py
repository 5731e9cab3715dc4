import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from app.api import api_router
from app.core.config import get_allowed_origins
from app.core.errors import BillingError
from database.connection import init_db

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    yield
    # Shutdown


logger = logging.getLogger(__name__)


class CORSMiddleware(BaseHTTPMiddleware):
    """Answers preflight requests and sets CORS headers on every response."""

    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("origin")
        allowed = get_allowed_origins()

        # Handle preflight requests
        if request.method == "OPTIONS":
            response = Response(status_code=200)
        else:
            response = await call_next(request)

        if "*" in allowed:
            response.headers["Access-Control-Allow-Origin"] = "*"
        elif origin and origin in allowed:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
        elif origin:
            logger.warning(f"CORS rejected - Origin '{origin}' is not allowed")

        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = (
            "Authorization, X-Client-Info, Apikey, Content-Type, Stripe-Signature"
        )

        return response


def _error_message(detail) -> str:
    if isinstance(detail, dict):
        return detail.get("message") or detail.get("error") or "Request failed"
    return str(detail)


async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 405:
        content = {"error": "Method not allowed"}
    elif isinstance(exc.detail, dict):
        # Entitlement denials carry the full check result
        content = {"error": _error_message(exc.detail), **exc.detail}
    else:
        content = {"error": _error_message(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Restaurant Loyalty API",
        description="Loyalty programs with subscription tiers billed through Stripe",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(CORSMiddleware)

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Include all routes
    app.include_router(api_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

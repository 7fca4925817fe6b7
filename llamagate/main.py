"""Main FastAPI application for llamagate.

Provides API-key authenticated, rate limited access to an Ollama server,
plus an admin API for managing keys and webhooks.
"""

import hmac
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from llamagate.admin import AdminError, KeyAdmin
from llamagate.config import Settings, load_settings
from llamagate.database import ApiKeyRecord, Database, create_database, utcnow
from llamagate.errors import ProxyError
from llamagate.logging_config import get_logger, setup_logging
from llamagate.notifications import UsageNotifier
from llamagate.pipeline import GeneratePipeline
from llamagate.rate_limiter import RateLimiter
from llamagate.relay import ForwardingRelay, create_http_client

logger = get_logger(__name__)


# ==================== Pydantic Models ====================

# /generate takes an arbitrary JSON object: everything except ``apikey`` is
# Ollama's business and is forwarded without validation.
GENERATE_EXAMPLE = {
    "apikey": "0123456789abcdef0123456789abcdef01234567",
    "model": "llama3",
    "prompt": "Why is the sky blue?",
    "stream": False,
}


class HealthResponse(BaseModel):
    status: str
    timestamp: str


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str


class RateLimitErrorResponse(BaseModel):
    """Error response for rate limit exceeded."""
    error: str
    retry_after: int


class AdminKeyResponse(BaseModel):
    """Response model for admin key listing."""
    key: str
    active: bool
    tokens: int
    rate_limit: int
    description: Optional[str]
    created_at: str
    last_used_at: str


class KeyInfoResponse(AdminKeyResponse):
    """Key details including live rate-limit state."""
    cached_tokens: Optional[int]
    usage_count: int


class KeyCreateRequest(BaseModel):
    key: Optional[str] = None  # Omit to generate one
    rate_limit: Optional[int] = None
    description: Optional[str] = None


class RateLimitUpdateRequest(BaseModel):
    rate_limit: int


class DescriptionUpdateRequest(BaseModel):
    description: Optional[str] = None


class WebhookRequest(BaseModel):
    url: str


class WebhookResponse(BaseModel):
    id: int
    url: str


class ConfigResponse(BaseModel):
    ollama_url: str
    source: str


class ConfigUpdateRequest(BaseModel):
    ollama_url: str


def _key_response(record: ApiKeyRecord) -> AdminKeyResponse:
    return AdminKeyResponse(
        key=record.key,
        active=record.active,
        tokens=record.tokens,
        rate_limit=record.rate_limit,
        description=record.description,
        created_at=record.created_at.isoformat(),
        last_used_at=record.last_used_at.isoformat(),
    )


# ==================== Gateway ====================

class Gateway:
    """Owns the request-path components for one server process.

    Settings, store and HTTP clients are injected; the rate limiter, relay,
    notifier and pipeline are wired together here.
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        http_client: Optional[httpx.AsyncClient] = None,
        webhook_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.database = database
        self._owned_clients = []
        if http_client is None:
            http_client = create_http_client(settings.backend_timeout)
            self._owned_clients.append(http_client)
        if webhook_client is None:
            webhook_client = httpx.AsyncClient(timeout=settings.webhook_timeout)
            self._owned_clients.append(webhook_client)
        self.http_client = http_client
        self.webhook_client = webhook_client

        self.rate_limiter = RateLimiter(database, clock=clock)
        self.relay = ForwardingRelay(http_client)
        self.notifier = UsageNotifier(database, webhook_client)
        self.pipeline = GeneratePipeline(
            database, self.rate_limiter, self.relay, self.notifier, self.resolve_ollama_url
        )
        self.admin = KeyAdmin(database, self.rate_limiter, settings.default_rate_limit)

    async def resolve_ollama_url(self) -> str:
        """Backend address: the admin override if one is stored, else settings."""
        config = await self.database.get_config()
        if config:
            return config.ollama_url
        return self.settings.ollama_url

    async def start(self) -> None:
        await self.database.initialize()
        keys = await self.database.get_all_keys()
        webhooks = await self.database.get_webhooks()
        logger.info(
            "gateway_started",
            keys=len(keys),
            webhooks=len(webhooks),
            ollama_url=await self.resolve_ollama_url(),
        )

    async def stop(self) -> None:
        await self.rate_limiter.flush()
        await self.notifier.drain(timeout=10.0)
        for client in self._owned_clients:
            await client.aclose()
        await self.database.close()
        logger.info("gateway_stopped")


def build_gateway(settings: Settings) -> Gateway:
    """Create a gateway backed by the database the settings point at."""
    if settings.database_url:
        database = create_database(database_url=settings.database_url)
    else:
        database = create_database(database_path=settings.database_path)
    return Gateway(settings, database)


# ==================== Dependency Functions ====================

def get_gateway(request: Request) -> Gateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Server is not ready")
    return gateway


async def verify_admin_password(
    gateway: Gateway = Depends(get_gateway),
    x_admin_password: Optional[str] = Header(None, alias="X-Admin-Password"),
) -> str:
    """FastAPI dependency to verify admin password from X-Admin-Password header.

    Uses timing-safe comparison to prevent timing attacks.

    Raises:
        HTTPException: 503 if no admin password is configured,
            401 if the password is missing or wrong.
    """
    expected_password = gateway.settings.admin_password
    if not expected_password:
        raise HTTPException(status_code=503, detail="Admin API is disabled (ADMIN_PASSWORD not set)")

    if not x_admin_password:
        raise HTTPException(status_code=401, detail="Invalid admin password")

    if hmac.compare_digest(x_admin_password.strip(), expected_password.strip()):
        return x_admin_password

    raise HTTPException(status_code=401, detail="Invalid admin password")


# ==================== Middleware ====================

class RequestLogMiddleware(BaseHTTPMiddleware):
    """Log every request and keep admin responses out of caches."""

    async def dispatch(self, request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)

        if request.url.path.startswith("/admin/"):
            response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
            response.headers["Pragma"] = "no-cache"
            response.headers["Expires"] = "0"

        logger.info(
            "request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return response


# ==================== Application ====================

def create_app(gateway: Optional[Gateway] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        gateway: A started gateway to serve with. When omitted, settings are
            loaded and a gateway is built and started in the lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.gateway is not None:
            yield
            return

        settings = load_settings()
        setup_logging(settings.log_level, settings.log_format)
        owned = build_gateway(settings)
        await owned.start()
        app.state.gateway = owned
        try:
            yield
        finally:
            app.state.gateway = None
            await owned.stop()

    app = FastAPI(
        title="llamagate",
        description="API key authentication and rate limiting for Ollama",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLogMiddleware)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        reason = errors[0].get("msg", "invalid value") if errors else "invalid value"
        logger.info("request_invalid", path=request.url.path, reason=reason)
        return JSONResponse(status_code=400, content={"error": f"Invalid request body: {reason}"})

    @app.exception_handler(AdminError)
    async def admin_error_handler(request: Request, exc: AdminError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    _register_proxy_routes(app)
    _register_admin_routes(app)
    return app


def _register_proxy_routes(app: FastAPI) -> None:

    @app.post(
        "/generate",
        responses={
            400: {"model": ErrorResponse},
            403: {"model": ErrorResponse},
            429: {"model": RateLimitErrorResponse},
            500: {"model": ErrorResponse},
        },
    )
    async def generate(
        body: Dict[str, Any] = Body(..., examples=[GENERATE_EXAMPLE]),
        gateway: Gateway = Depends(get_gateway),
    ):
        """Forward a generate request to Ollama.

        Streams ``application/x-ndjson`` when ``stream`` is true, otherwise
        returns the backend's JSON answer.
        """
        return await gateway.pipeline.handle(body)

    @app.get(
        "/health",
        response_model=HealthResponse,
        responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
    )
    async def health(
        apikey: Optional[str] = Query(None),
        gateway: Gateway = Depends(get_gateway),
    ) -> HealthResponse:
        """Check the service is up and the API key is valid. Does not spend a token."""
        return HealthResponse(**await gateway.pipeline.check_health(apikey))


def _register_admin_routes(app: FastAPI) -> None:
    admin_responses = {401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}

    @app.get("/admin/keys", response_model=list[AdminKeyResponse], responses=admin_responses)
    async def admin_list_keys(
        active: Optional[bool] = None,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> list[AdminKeyResponse]:
        """List API keys, optionally only active or inactive ones."""
        return [_key_response(k) for k in await gateway.admin.list_keys(active)]

    @app.post("/admin/keys", response_model=AdminKeyResponse, status_code=201, responses=admin_responses)
    async def admin_create_key(
        body: KeyCreateRequest,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> AdminKeyResponse:
        """Generate a key, or register the one given in the body."""
        if body.key:
            record = await gateway.admin.add_key(body.key, body.rate_limit, body.description)
        else:
            record = await gateway.admin.generate_key(body.rate_limit, body.description)
        return _key_response(record)

    @app.post("/admin/keys/activate-all", responses=admin_responses)
    async def admin_activate_all(
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        count = await gateway.admin.set_all_active(True)
        return {"message": f"Activated {count} API keys", "count": count}

    @app.post("/admin/keys/deactivate-all", responses=admin_responses)
    async def admin_deactivate_all(
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        count = await gateway.admin.set_all_active(False)
        return {"message": f"Deactivated {count} API keys", "count": count}

    @app.get("/admin/keys/{key}", response_model=KeyInfoResponse, responses=admin_responses)
    async def admin_key_info(
        key: str,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> KeyInfoResponse:
        """Key metadata, live bucket state and number of recorded requests."""
        record = await gateway.admin.key_info(key)
        if not record:
            raise HTTPException(status_code=404, detail="API key not found")
        cached = gateway.rate_limiter.snapshot(key)
        return KeyInfoResponse(
            **_key_response(record).model_dump(),
            cached_tokens=cached.tokens if cached else None,
            usage_count=await gateway.database.count_usage(key),
        )

    @app.delete("/admin/keys/{key}", responses=admin_responses)
    async def admin_delete_key(
        key: str,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        if not await gateway.admin.remove_key(key):
            raise HTTPException(status_code=404, detail="API key not found")
        return {"message": "API key removed"}

    @app.put("/admin/keys/{key}/activate", responses=admin_responses)
    async def admin_activate_key(
        key: str,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        if not await gateway.admin.set_active(key, True):
            raise HTTPException(status_code=404, detail="API key not found")
        return {"message": "API key activated"}

    @app.put("/admin/keys/{key}/deactivate", responses=admin_responses)
    async def admin_deactivate_key(
        key: str,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        if not await gateway.admin.set_active(key, False):
            raise HTTPException(status_code=404, detail="API key not found")
        return {"message": "API key deactivated"}

    @app.put("/admin/keys/{key}/rate-limit", responses=admin_responses)
    async def admin_set_rate_limit(
        key: str,
        body: RateLimitUpdateRequest,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        if not await gateway.admin.set_rate_limit(key, body.rate_limit):
            raise HTTPException(status_code=404, detail="API key not found")
        return {"message": f"Rate limit set to {body.rate_limit} requests per minute"}

    @app.put("/admin/keys/{key}/description", responses=admin_responses)
    async def admin_set_description(
        key: str,
        body: DescriptionUpdateRequest,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        if not await gateway.admin.set_description(key, body.description):
            raise HTTPException(status_code=404, detail="API key not found")
        return {"message": "Description updated"}

    @app.post("/admin/keys/{key}/regenerate", responses=admin_responses)
    async def admin_regenerate_key(
        key: str,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        new_key = await gateway.admin.regenerate_key(key)
        if not new_key:
            raise HTTPException(status_code=404, detail="API key not found")
        return {"message": "API key regenerated", "key": new_key}

    @app.get("/admin/webhooks", response_model=list[WebhookResponse], responses=admin_responses)
    async def admin_list_webhooks(
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> list[WebhookResponse]:
        return [WebhookResponse(id=w.id, url=w.url) for w in await gateway.admin.list_webhooks()]

    @app.post("/admin/webhooks", response_model=WebhookResponse, status_code=201, responses=admin_responses)
    async def admin_add_webhook(
        body: WebhookRequest,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> WebhookResponse:
        webhook_id = await gateway.admin.add_webhook(body.url)
        return WebhookResponse(id=webhook_id, url=body.url.strip())

    @app.delete("/admin/webhooks/{webhook_id}", responses=admin_responses)
    async def admin_delete_webhook(
        webhook_id: int,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> dict:
        if not await gateway.admin.delete_webhook(webhook_id):
            raise HTTPException(status_code=404, detail="Webhook not found")
        return {"message": "Webhook deleted"}

    @app.get("/admin/config", response_model=ConfigResponse, responses=admin_responses)
    async def admin_get_config(
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> ConfigResponse:
        """Current backend address and whether it comes from the database or settings."""
        config = await gateway.database.get_config()
        if config:
            return ConfigResponse(ollama_url=config.ollama_url, source="database")
        return ConfigResponse(ollama_url=gateway.settings.ollama_url, source="settings")

    @app.put("/admin/config", response_model=ConfigResponse, responses=admin_responses)
    async def admin_update_config(
        body: ConfigUpdateRequest,
        gateway: Gateway = Depends(get_gateway),
        _: str = Depends(verify_admin_password),
    ) -> ConfigResponse:
        """Point the proxy at a different Ollama server without restarting."""
        ollama_url = await gateway.admin.set_ollama_url(body.ollama_url)
        return ConfigResponse(ollama_url=ollama_url, source="database")


app = create_app()

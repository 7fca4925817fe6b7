# llamagate: API key gateway for Ollama

from llamagate.config import Settings, load_settings
from llamagate.database import (
    Database,
    ApiKeyRecord,
    UsageEvent,
    WebhookEndpoint,
    ProxyConfig,
    create_database,
)
from llamagate.errors import ProxyError
from llamagate.rate_limiter import RateLimiter, RateLimitResult, Decision
from llamagate.relay import ForwardingRelay, RelayResult
from llamagate.notifications import UsageNotifier
from llamagate.pipeline import GeneratePipeline, PipelineState
from llamagate.admin import KeyAdmin, generate_api_key
from llamagate.main import app, create_app, Gateway

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "ApiKeyRecord",
    "UsageEvent",
    "WebhookEndpoint",
    "ProxyConfig",
    "create_database",
    "ProxyError",
    "RateLimiter",
    "RateLimitResult",
    "Decision",
    "ForwardingRelay",
    "RelayResult",
    "UsageNotifier",
    "GeneratePipeline",
    "PipelineState",
    "KeyAdmin",
    "generate_api_key",
    "app",
    "create_app",
    "Gateway",
]

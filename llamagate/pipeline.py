"""Request pipeline for /generate and /health.

A generate request moves through
``RECEIVED -> KEY_VALIDATED -> RATE_CHECKED -> FORWARDED -> COMPLETED`` and
may drop into ``REJECTED`` from any non-terminal state. Rejections before
``FORWARDED`` have no side effects: no usage row, no webhook call.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi.responses import JSONResponse, StreamingResponse

from llamagate.database import ApiKeyRecord, Database
from llamagate.errors import (
    Deactivated,
    InternalStoreError,
    InvalidKey,
    MissingKey,
    ProxyError,
    RateLimited,
)
from llamagate.logging_config import get_logger, mask_key
from llamagate.notifications import UsageNotifier
from llamagate.rate_limiter import Decision, RateLimiter
from llamagate.relay import ForwardingRelay, NDJSON_MEDIA_TYPE, RelayResult

logger = get_logger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "received"
    KEY_VALIDATED = "key_validated"
    RATE_CHECKED = "rate_checked"
    FORWARDED = "forwarded"
    COMPLETED = "completed"
    REJECTED = "rejected"


_SEQUENCE = [
    PipelineState.RECEIVED,
    PipelineState.KEY_VALIDATED,
    PipelineState.RATE_CHECKED,
    PipelineState.FORWARDED,
    PipelineState.COMPLETED,
]


@dataclass
class PipelineRun:
    """State of one request travelling through the pipeline."""
    state: PipelineState = PipelineState.RECEIVED
    rejection: Optional[ProxyError] = None
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])

    @property
    def finished(self) -> bool:
        return self.state in (PipelineState.COMPLETED, PipelineState.REJECTED)

    def advance(self, new_state: PipelineState) -> None:
        if self.finished or _SEQUENCE.index(new_state) != _SEQUENCE.index(self.state) + 1:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def reject(self, error: ProxyError) -> None:
        if self.finished:
            raise RuntimeError(f"Cannot reject a request already {self.state.value}")
        self.rejection = error
        self.state = PipelineState.REJECTED
        self.history.append(PipelineState.REJECTED)


def build_backend_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    """The body as the backend should see it: no API key, no nulls.

    ``stream`` is always sent explicitly so the backend answers in the same
    mode the relay expects.
    """
    payload = {k: v for k, v in body.items() if k != "apikey" and v is not None}
    payload["stream"] = bool(payload.get("stream", False))
    return payload


class GeneratePipeline:
    """auth -> rate limit -> forward -> usage/notify."""

    def __init__(
        self,
        database: Database,
        rate_limiter: RateLimiter,
        relay: ForwardingRelay,
        notifier: UsageNotifier,
        resolve_ollama_url: Callable[[], Awaitable[str]],
    ):
        self.database = database
        self.rate_limiter = rate_limiter
        self.relay = relay
        self.notifier = notifier
        self.resolve_ollama_url = resolve_ollama_url

    async def _lookup(self, key: str) -> Optional[ApiKeyRecord]:
        try:
            return await self.database.get_key(key)
        except Exception as e:
            logger.error("key_lookup_failed", api_key=mask_key(key), error=str(e))
            raise InternalStoreError() from e

    async def _authenticate(self, key: Any) -> ApiKeyRecord:
        if key is None or key == "":
            raise MissingKey()
        if not isinstance(key, str):
            logger.info("invalid_api_key", key_type=type(key).__name__)
            raise InvalidKey()
        record = await self._lookup(key)
        if record is None:
            logger.info("invalid_api_key", api_key=mask_key(key))
            self.rate_limiter.evict(key)
            raise InvalidKey()
        return record

    async def handle(self, body: Dict[str, Any], run: Optional[PipelineRun] = None):
        """Run a generate request to completion.

        Returns a JSONResponse (buffered) or StreamingResponse (``stream``
        truthy). Raises a ProxyError subclass when the request is rejected.
        """
        run = run or PipelineRun()
        key = body.get("apikey")
        try:
            record = await self._authenticate(key)
            run.advance(PipelineState.KEY_VALIDATED)

            result = await self.rate_limiter.admit(key, record)
            if result.decision is Decision.DEACTIVATED:
                raise Deactivated()
            if result.decision is Decision.INVALID_KEY:
                raise InvalidKey()
            if result.decision is Decision.RATE_LIMITED:
                raise RateLimited(retry_after=result.retry_after)
            run.advance(PipelineState.RATE_CHECKED)

            payload = build_backend_payload(body)
            try:
                ollama_url = await self.resolve_ollama_url()
            except Exception as e:
                logger.error("backend_config_lookup_failed", error=str(e))
                raise InternalStoreError() from e

            logger.info(
                "proxy_request",
                api_key=mask_key(key),
                model=payload.get("model"),
                stream=payload["stream"],
                remaining=result.remaining,
            )
            # The token is already spent; backend failures do not refund it.
            relay_result = await self.relay.forward(ollama_url, payload)
            run.advance(PipelineState.FORWARDED)
        except ProxyError as e:
            run.reject(e)
            logger.info(
                "request_rejected",
                api_key=mask_key(key) if isinstance(key, str) else None,
                reason=type(e).__name__,
                status_code=e.status_code,
            )
            raise

        if relay_result.streaming:
            return StreamingResponse(
                self._stream_then_record(run, key, payload, relay_result),
                status_code=relay_result.status_code,
                media_type=NDJSON_MEDIA_TYPE,
                headers={
                    "Cache-Control": "no-cache, no-store, must-revalidate",
                    "X-Accel-Buffering": "no",  # Disable nginx/proxy buffering
                },
            )

        self.notifier.on_success(key, payload)
        run.advance(PipelineState.COMPLETED)
        return JSONResponse(status_code=relay_result.status_code, content=relay_result.body)

    async def _stream_then_record(
        self,
        run: PipelineRun,
        key: str,
        payload: Dict[str, Any],
        relay_result: RelayResult,
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in relay_result.stream:
                yield chunk
        finally:
            # A caller disconnect closes this generator, not the relay's.
            await relay_result.stream.aclose()
        # Only reached when the backend stream ended cleanly.
        self.notifier.on_success(key, payload)
        run.advance(PipelineState.COMPLETED)

    async def check_health(self, key: Optional[str]) -> Dict[str, Any]:
        """Validate ``key`` without spending a token."""
        await self._authenticate(key)
        return {
            "status": "API is healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

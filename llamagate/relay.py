"""Forwarding of generate requests to the Ollama server.

The relay is protocol-agnostic: the caller's payload goes to
``<ollama_url>/api/generate`` untouched and the answer comes back either as one
buffered JSON document or as an ndjson byte stream relayed chunk by chunk.
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from llamagate.errors import (
    BackendError,
    BackendProtocolError,
    BackendUnavailable,
    StreamInterrupted,
)
from llamagate.logging_config import get_logger

logger = get_logger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"
GENERATE_PATH = "/api/generate"


def create_http_client(connect_timeout: float = 15.0) -> httpx.AsyncClient:
    """Build the pooled client used for backend calls."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=connect_timeout,
            read=600.0,        # Long generations may go quiet for a while
            write=60.0,
            pool=30.0,
        ),
        limits=httpx.Limits(
            max_keepalive_connections=100,
            max_connections=200,
            keepalive_expiry=120.0,
        ),
    )


@dataclass
class RelayResult:
    """Outcome of a successful backend call.

    Exactly one of ``body`` (buffered mode) and ``stream`` (streaming mode) is set.
    """
    status_code: int
    media_type: str
    body: Any = None
    stream: Optional[AsyncIterator[bytes]] = None

    @property
    def streaming(self) -> bool:
        return self.stream is not None


def _decode_error_body(content: bytes) -> Any:
    text = content.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text[:500]


class ForwardingRelay:
    """Executes backend calls and relays their responses."""

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    async def forward(self, ollama_url: str, payload: Dict[str, Any]) -> RelayResult:
        """Send ``payload`` to the backend generate endpoint.

        Args:
            ollama_url: Backend base address, without trailing slash.
            payload: Request body to forward verbatim. ``stream`` selects
                streaming mode.

        Returns:
            RelayResult holding the buffered JSON or a byte stream.

        Raises:
            BackendUnavailable: The backend could not be reached or timed out.
            BackendError: The backend answered with a non-2xx status.
            BackendProtocolError: A buffered answer was not valid JSON.
        """
        url = f"{ollama_url}{GENERATE_PATH}"
        if payload.get("stream"):
            return await self._forward_streaming(url, payload)
        return await self._forward_buffered(url, payload)

    async def _forward_buffered(self, url: str, payload: Dict[str, Any]) -> RelayResult:
        try:
            response = await self.http_client.post(url, json=payload)
        except httpx.TimeoutException as e:
            logger.error("backend_timeout", url=url, error=str(e))
            raise BackendUnavailable() from e
        except httpx.RequestError as e:
            logger.error("backend_unreachable", url=url, error=str(e))
            raise BackendUnavailable() from e

        if not response.is_success:
            logger.warning("backend_error", url=url, status_code=response.status_code)
            raise BackendError(response.status_code, _decode_error_body(response.content))

        try:
            data = response.json()
        except ValueError as e:
            logger.error("backend_invalid_response", url=url, body=response.text[:200])
            raise BackendProtocolError() from e

        return RelayResult(status_code=response.status_code, media_type="application/json", body=data)

    async def _forward_streaming(self, url: str, payload: Dict[str, Any]) -> RelayResult:
        request = self.http_client.build_request("POST", url, json=payload)
        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.error("backend_timeout", url=url, error=str(e))
            raise BackendUnavailable() from e
        except httpx.RequestError as e:
            logger.error("backend_unreachable", url=url, error=str(e))
            raise BackendUnavailable() from e

        # Nothing has been sent to the caller yet, so a bad status can still
        # be reported with its own status code.
        if not response.is_success:
            try:
                content = await response.aread()
            except httpx.HTTPError:
                content = b""
            finally:
                await response.aclose()
            logger.warning("backend_error", url=url, status_code=response.status_code)
            raise BackendError(response.status_code, _decode_error_body(content))

        return RelayResult(
            status_code=response.status_code,
            media_type=NDJSON_MEDIA_TYPE,
            stream=self._relay_stream(url, response),
        )

    async def _relay_stream(self, url: str, response: httpx.Response) -> AsyncIterator[bytes]:
        relayed = 0
        try:
            async for chunk in response.aiter_bytes():
                relayed += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already on the wire; all we can do is cut the
            # connection so the caller sees a truncated stream.
            logger.error(
                "backend_stream_interrupted",
                url=url,
                bytes_relayed=relayed,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StreamInterrupted(str(e)) from e
        finally:
            # Also runs when the caller disconnects and the generator is cancelled.
            await response.aclose()

"""Provider adapter base: generic request in, canonical events out.

Each vendor supplies a request normalizer and a stream translator; the
shared :meth:`ProviderAdapter.open_stream` handles the HTTP/SSE plumbing
and turns every transport failure into an in-band :class:`ErrorEvent`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import httpx

from tradechat.config import ProviderProfile
from tradechat.errors import classify_status
from tradechat.types import (
    CanonicalEvent,
    ErrorEvent,
    ErrorType,
    MessageStop,
    SystemContent,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request types
# ---------------------------------------------------------------------------

@dataclass
class LLMRequest:
    """Vendor-neutral request for a single streaming round."""

    messages: list[dict[str, Any]]
    model: str
    system: SystemContent | None = None
    tools: list[dict[str, Any]] | None = None
    max_tokens: int = 1000
    temperature: float = 0.7
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VendorRequest:
    """Vendor-specific call parameters produced by ``normalize_request``."""

    path: str
    payload: dict[str, Any]
    model: str


class StreamTranslator(Protocol):
    """Per-stream state machine turning SSE ``data:`` payloads into events."""

    def feed(self, data: str) -> list[CanonicalEvent]:
        ...

    def finish(self) -> list[CanonicalEvent]:
        """Called when the byte stream ends without a terminal event."""
        ...


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class ProviderAdapter(ABC):
    """Base class for streaming vendor adapters.

    Parameters
    ----------
    profile:
        Connection settings (URL, key, timeouts).
    client:
        Optional pre-built ``httpx.AsyncClient``; mostly for tests.
    """

    provider: str = ""

    def __init__(
        self,
        profile: ProviderProfile,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.profile = profile
        self._client = client or httpx.AsyncClient(
            base_url=profile.url,
            timeout=httpx.Timeout(
                profile.timeout, connect=profile.connect_timeout, read=60,
            ),
        )
        self._client.headers.update(self._headers())

    @abstractmethod
    def _headers(self) -> dict[str, str]:
        ...

    @abstractmethod
    def normalize_request(self, request: LLMRequest) -> VendorRequest:
        ...

    @abstractmethod
    def _translator(self) -> StreamTranslator:
        ...

    async def open_stream(
        self, vendor_request: VendorRequest,
    ) -> AsyncIterator[CanonicalEvent]:
        """Stream canonical events for *vendor_request*.

        Never raises for transport, HTTP or protocol failures; those are
        yielded as a final :class:`ErrorEvent`.
        """
        translator = self._translator()
        try:
            async with self._client.stream(
                "POST", vendor_request.path, json=vendor_request.payload,
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    _logger.warning(
                        "%s API returned %d: %s",
                        self.provider, resp.status_code, body[:300],
                    )
                    yield ErrorEvent(
                        message=f"HTTP {resp.status_code}",
                        error_type=classify_status(resp.status_code, body),
                        status_code=resp.status_code,
                    )
                    return

                async for raw_line in resp.aiter_lines():
                    if not raw_line.startswith("data:"):
                        continue
                    data_str = raw_line[5:].strip()
                    if not data_str:
                        continue
                    for event in translator.feed(data_str):
                        yield event
                        if isinstance(event, (MessageStop, ErrorEvent)):
                            return

                for event in translator.finish():
                    yield event
        except httpx.TimeoutException as e:
            _logger.warning("%s stream timed out: %s", self.provider, e)
            yield ErrorEvent(f"timeout: {e}", ErrorType.SERVER_ERROR)
        except httpx.HTTPError as e:
            _logger.warning("%s stream transport error: %s", self.provider, e)
            yield ErrorEvent(f"transport error: {e}", ErrorType.SERVER_ERROR)
        except (KeyError, TypeError, ValueError) as e:
            _logger.warning("%s stream protocol error: %s", self.provider, e)
            yield ErrorEvent(f"protocol error: {e}", ErrorType.UNKNOWN)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ProviderAdapter:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from jfsplitter.core.config import AuthMode
from jfsplitter.domain.proxy import READ_METHODS, InboundRequest, UpstreamOutcome, UpstreamTarget
from jfsplitter.persistence.user_map import IdentityMappingStore
from jfsplitter.services.rewrite import ServiceAuthProfile, build_upstream_headers, rewrite_path
from jfsplitter.services.telemetry import record_upstream_call


logger = logging.getLogger(__name__)

# The body is fully decoded and re-serialized, so upstream framing/encoding headers no longer apply.
HOP_BY_HOP_RESPONSE_HEADERS = frozenset(
    {
        "transfer-encoding",
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "upgrade",
        "content-encoding",
        "content-length",
    }
)


def build_upstream_url(base_url: str, path: str, query: str) -> str:
    url = f"{base_url.rstrip('/')}{path}"
    return f"{url}?{query}" if query else url


def filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS
    ]


class UpstreamDispatcher:
    """Executes one timed round trip against one upstream.

    ``dispatch`` never raises: timeouts and transport errors come back as a
    synthetic 502 outcome with ``ok=False``.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        store: IdentityMappingStore,
        auth_mode: AuthMode,
        auth_profile: ServiceAuthProfile,
        timeout_ms: int,
    ) -> None:
        self._client = client
        self._store = store
        self._auth_mode = auth_mode
        self._auth_profile = auth_profile
        self._timeout_ms = max(1, timeout_ms)

    async def dispatch(
        self,
        target: UpstreamTarget,
        request: InboundRequest,
        body: bytes | None = None,
    ) -> UpstreamOutcome:
        path = rewrite_path(request.path, target, self._store)
        url = build_upstream_url(target.base_url, path, request.query)
        headers = build_upstream_headers(
            request,
            target,
            auth_mode=self._auth_mode,
            profile=self._auth_profile,
        )
        method = request.method.upper()
        content = body if body and method not in READ_METHODS else None

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.request(method, url, headers=headers, content=content, follow_redirects=False),
                timeout=self._timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            return self._failure(target, method, path, f"timeout after {self._timeout_ms}ms", start)
        except Exception as exc:  # noqa: BLE001 - upstream failures become synthetic outcomes
            return self._failure(target, method, path, str(exc) or exc.__class__.__name__, start)

        record_upstream_call(
            upstream=target.name,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        return UpstreamOutcome(
            ok=True,
            status_code=response.status_code,
            headers=filter_response_headers(response.headers),
            body=response.content,
        )

    def _failure(
        self,
        target: UpstreamTarget,
        method: str,
        path: str,
        message: str,
        start: float,
    ) -> UpstreamOutcome:
        record_upstream_call(
            upstream=target.name,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        logger.warning(
            "upstream_call_failed upstream=%s method=%s path=%s error=%s",
            target.name,
            method,
            path,
            message,
        )
        return UpstreamOutcome(
            ok=False,
            status_code=502,
            headers=[("content-type", "text/plain")],
            body=f"upstream {target.name} error: {message}".encode("utf-8"),
        )

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from jfsplitter.apps.proxy.context import ProxyContext
from jfsplitter.core.config import Settings, get_settings
from jfsplitter.core.logging import configure_logging
from jfsplitter.domain.proxy import InboundRequest, UpstreamOutcome
from jfsplitter.services.endpoints import is_auth_endpoint, is_create_user
from jfsplitter.services.telemetry import counters_snapshot, upstream_call_summary


logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def build_inbound_request(request: Request, body: bytes) -> InboundRequest:
    # Prefer the undecoded path so ids and escapes reach the upstreams byte-for-byte.
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    headers: dict[str, str] = {}
    for name, value in request.headers.items():
        name = name.lower()
        if name in headers:
            separator = "; " if name == "cookie" else ", "
            headers[name] = f"{headers[name]}{separator}{value}"
        else:
            headers[name] = value
    return InboundRequest(
        method=request.method.upper(),
        path=path,
        query=query,
        headers=headers,
        body=body,
        client_host=request.client.host if request.client else None,
        is_auth_endpoint=is_auth_endpoint(path),
        is_create_user=is_create_user(request.method, path),
    )


def outcome_response(outcome: UpstreamOutcome) -> Response:
    response = Response(content=outcome.body, status_code=outcome.status_code)
    for name, value in outcome.headers:
        response.headers.append(name, value)
    return response


def create_app(settings: Settings | None = None, *, context: ProxyContext | None = None) -> FastAPI:
    resolved = settings or (context.settings if context is not None else get_settings())
    configure_logging(resolved.log_level)
    proxy = context or ProxyContext.create(resolved)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "proxy_started primary=%s secondary=%s split_mode=%s auth_mode=%s users=%s",
            resolved.primary_url,
            resolved.secondary_url,
            resolved.split_mode,
            resolved.auth_mode,
            len(proxy.store),
        )
        yield
        await proxy.aclose()
        logger.info(
            "proxy_stopped counters=%s upstreams=%s",
            counters_snapshot(),
            upstream_call_summary(),
        )

    # Docs routes are disabled; every path except /health belongs to the upstreams.
    app = FastAPI(
        title="jf-splitter",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.proxy = proxy

    @app.api_route("/health", methods=["GET", "HEAD"], response_class=PlainTextResponse)
    async def health() -> str:
        return "ok"

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def forward(request: Request) -> Response:
        try:
            body = await request.body()
        except Exception as exc:  # noqa: BLE001 - the only intake failure the client sees
            logger.warning("request_read_failed method=%s path=%s error=%r", request.method, request.url.path, exc)
            return PlainTextResponse(f"request read error: {exc!r}", status_code=500)

        inbound = build_inbound_request(request, body)
        logger.debug(
            "proxy_request method=%s target=%s auth_endpoint=%s",
            inbound.method,
            inbound.target,
            inbound.is_auth_endpoint,
        )
        outcome = await proxy.router.route(inbound)
        return outcome_response(outcome)

    return app

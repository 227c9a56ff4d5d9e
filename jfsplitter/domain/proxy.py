from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any, Literal


UpstreamName = Literal["primary", "secondary"]

UPSTREAM_PRIMARY: UpstreamName = "primary"
UPSTREAM_SECONDARY: UpstreamName = "secondary"

READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(frozen=True)
class UpstreamTarget:
    # One media server instance; fixed for the process lifetime.
    name: UpstreamName
    base_url: str
    token: str = ""


@dataclass(frozen=True)
class InboundRequest:
    # Fully buffered client request; shared read-only by every upstream call it fans out to.
    method: str
    path: str
    query: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_host: str | None = None
    is_auth_endpoint: bool = False
    is_create_user: bool = False

    @property
    def is_read_method(self) -> bool:
        return self.method.upper() in READ_METHODS

    @property
    def target(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path


@dataclass(frozen=True)
class UpstreamOutcome:
    # Normalized result of one upstream call; transport failures arrive here as ok=False.
    ok: bool
    status_code: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    @property
    def succeeded(self) -> bool:
        return self.ok and self.status_code < 400

    def json(self) -> Any:
        # Raises ValueError for empty or non-JSON bodies.
        return json.loads(self.body.decode("utf-8"))

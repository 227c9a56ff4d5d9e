from __future__ import annotations

from dataclasses import dataclass
import logging

from jfsplitter.core.config import AuthMode, Settings
from jfsplitter.domain.proxy import UPSTREAM_SECONDARY, InboundRequest, UpstreamTarget
from jfsplitter.persistence.user_map import IdentityMappingStore
from jfsplitter.services.endpoints import is_auth_endpoint, split_user_scoped_path


logger = logging.getLogger(__name__)

# Every header a client may use to carry its own media-server credential.
CLIENT_CREDENTIAL_HEADERS = (
    "authorization",
    "x-emby-authorization",
    "x-mediabrowser-authorization",
    "x-emby-token",
    "x-mediabrowser-token",
)

# The HTTP client recomputes framing and negotiates its own encoding.
_DROPPED_REQUEST_HEADERS = frozenset(
    {"host", "accept-encoding", "content-length", "transfer-encoding", "connection"}
)


@dataclass(frozen=True)
class ServiceAuthProfile:
    # Device identity announced alongside service tokens.
    client: str = "Seerr"
    device: str = "Seerr"
    device_id: str = "BOT_seerr"
    version: str = "1.0.0"

    @classmethod
    def from_settings(cls, settings: Settings) -> ServiceAuthProfile:
        return cls(
            client=settings.auth_client,
            device=settings.auth_device,
            device_id=settings.auth_device_id,
            version=settings.auth_version,
        )


def build_emby_authorization(token: str, profile: ServiceAuthProfile) -> str:
    return (
        f'MediaBrowser Client="{profile.client}", Device="{profile.device}", '
        f'DeviceId="{profile.device_id}", Version="{profile.version}", Token="{token}"'
    )


def rewrite_path(path: str, target: UpstreamTarget, store: IdentityMappingStore) -> str:
    # Only secondary-bound user-scoped paths carry an id from the primary's id space.
    if target.name != UPSTREAM_SECONDARY:
        return path
    parts = split_user_scoped_path(path)
    if parts is None:
        return path
    segment, primary_id, rest = parts
    secondary_id = store.get(primary_id)
    if secondary_id is None:
        logger.warning("user_map_missing_for_path primary_id=%s path=%s", primary_id, path)
        return path
    return f"/{segment}/{secondary_id}{rest}"


def has_client_credentials(headers: dict[str, str]) -> bool:
    return any(name in headers for name in CLIENT_CREDENTIAL_HEADERS)


def strip_client_credentials(headers: dict[str, str]) -> None:
    for name in CLIENT_CREDENTIAL_HEADERS:
        headers.pop(name, None)


def build_upstream_headers(
    request: InboundRequest,
    target: UpstreamTarget,
    *,
    auth_mode: AuthMode,
    profile: ServiceAuthProfile,
) -> dict[str, str]:
    headers = {
        name: value for name, value in request.headers.items() if name not in _DROPPED_REQUEST_HEADERS
    }
    headers["x-forwarded-proto"] = request.headers.get("x-forwarded-proto") or "http"
    headers["x-forwarded-host"] = request.headers.get("x-forwarded-host") or request.headers.get("host") or ""
    headers["x-forwarded-for"] = (
        request.headers.get("x-forwarded-for") or request.client_host or "unknown"
    )

    if auth_mode != "upstream_tokens" or is_auth_endpoint(request.path):
        return headers

    # The secondary cannot validate tokens the primary issued, so it always gets its own.
    if target.name == UPSTREAM_SECONDARY or not has_client_credentials(headers):
        strip_client_credentials(headers)
        if target.token:
            headers["X-Emby-Authorization"] = build_emby_authorization(target.token, profile)
            headers["X-MediaBrowser-Token"] = target.token
    else:
        logger.debug(
            "client_auth_preserved upstream=%s method=%s path=%s",
            target.name,
            request.method,
            request.path,
        )
    return headers

from __future__ import annotations

import re


# Login flows must reach each server with the client's own credentials.
AUTH_ENDPOINT_PREFIXES = (
    "/users/authenticate",
    "/quickconnect",
    "/sessions",
)

# /Users/... routes whose second segment is an action, not a user id.
IDENTIFIER_AGNOSTIC_PREFIXES = (
    "/users/authenticate",
    "/users/new",
    "/users/public",
)

CREATE_USER_PATH = "/users/new"

_USER_SCOPED_RE = re.compile(r"^/(?P<segment>users)/(?P<user_id>[^/]+)(?P<rest>/.*)?$", re.IGNORECASE)


def is_auth_endpoint(path: str) -> bool:
    return path.lower().startswith(AUTH_ENDPOINT_PREFIXES)


def is_identifier_agnostic(path: str) -> bool:
    return path.lower().startswith(IDENTIFIER_AGNOSTIC_PREFIXES)


def is_create_user(method: str, path: str) -> bool:
    return method.upper() == "POST" and path.lower().rstrip("/") == CREATE_USER_PATH


def split_user_scoped_path(path: str) -> tuple[str, str, str] | None:
    """Split ``/Users/{id}/rest`` into ``(segment, id, rest)``.

    Returns None for paths outside the user-scoped family, including the
    identifier-agnostic endpoints. ``segment`` keeps the caller's casing.
    """
    if is_identifier_agnostic(path):
        return None
    match = _USER_SCOPED_RE.match(path)
    if match is None:
        return None
    return match.group("segment"), match.group("user_id"), match.group("rest") or ""


def user_scoped_id(path: str) -> str | None:
    parts = split_user_scoped_path(path)
    return parts[1] if parts is not None else None

from __future__ import annotations

import logging
from typing import Any

from jfsplitter.core.errors import UpstreamPayloadError
from jfsplitter.domain.proxy import InboundRequest, UpstreamOutcome, UpstreamTarget
from jfsplitter.persistence.user_map import IdentityMappingStore
from jfsplitter.services.dispatcher import UpstreamDispatcher
from jfsplitter.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _same_id(left: object, right: str) -> bool:
    # Media server ids appear both with and without dashes.
    if not isinstance(left, str):
        return False
    return left.replace("-", "").lower() == right.replace("-", "").lower()


def _lookup_request(request: InboundRequest, path: str) -> InboundRequest:
    # Lookups reuse the client's headers so forwarding and credential rules apply unchanged.
    return InboundRequest(
        method="GET",
        path=path,
        headers=request.headers,
        client_host=request.client_host,
    )


def _payload(outcome: UpstreamOutcome, what: str) -> Any:
    if not outcome.succeeded:
        raise UpstreamPayloadError(f"{what} returned status {outcome.status_code}")
    try:
        return outcome.json()
    except ValueError as exc:
        raise UpstreamPayloadError(f"{what} is not valid JSON") from exc


def primary_user_name(payload: Any, primary_id: str) -> str | None:
    if isinstance(payload, list):
        record = next(
            (item for item in payload if isinstance(item, dict) and _same_id(item.get("Id"), primary_id)),
            None,
        )
    elif isinstance(payload, dict):
        record = payload
    else:
        raise UpstreamPayloadError("primary user record is neither an object nor a list")
    if record is None:
        return None
    record_id = record.get("Id")
    if record_id is not None and not _same_id(record_id, primary_id):
        # Alias routes such as /Users/Me resolve to some other user's record.
        logger.info("user_map_heal_alias requested=%s resolved=%s", primary_id, record_id)
        return None
    name = record.get("Name")
    return name if isinstance(name, str) and name else None


def match_secondary_user(payload: Any, name: str) -> str | None:
    if not isinstance(payload, list):
        raise UpstreamPayloadError("secondary user list is not a list")
    matches = [
        item["Id"]
        for item in payload
        if isinstance(item, dict)
        and item.get("Name") == name
        and isinstance(item.get("Id"), str)
        and item["Id"]
    ]
    if len(matches) > 1:
        logger.warning("user_map_heal_duplicate_name name=%s candidates=%s", name, len(matches))
    return matches[0] if matches else None


class UserMapHealer:
    """Discovers a missing primary->secondary mapping by display name.

    Returns the secondary id and records it in the store, or None when the
    user cannot be correlated. Never raises; callers carry on with the
    unmapped path.
    """

    def __init__(
        self,
        *,
        store: IdentityMappingStore,
        dispatcher: UpstreamDispatcher,
        primary: UpstreamTarget,
        secondary: UpstreamTarget,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._primary = primary
        self._secondary = secondary

    async def heal(self, primary_id: str, request: InboundRequest) -> str | None:
        try:
            primary_outcome = await self._dispatcher.dispatch(
                self._primary, _lookup_request(request, f"/Users/{primary_id}"), b""
            )
            name = primary_user_name(_payload(primary_outcome, "primary user lookup"), primary_id)
            if name is None:
                increment_counter("user_map_heal_misses_total")
                logger.info("user_map_heal_no_name primary_id=%s", primary_id)
                return None

            secondary_outcome = await self._dispatcher.dispatch(
                self._secondary, _lookup_request(request, "/Users"), b""
            )
            secondary_id = match_secondary_user(_payload(secondary_outcome, "secondary user list"), name)
        except UpstreamPayloadError as exc:
            increment_counter("user_map_heal_misses_total")
            logger.warning("user_map_heal_failed primary_id=%s error=%s", primary_id, exc)
            return None

        if secondary_id is None:
            increment_counter("user_map_heal_misses_total")
            logger.info("user_map_heal_no_match primary_id=%s name=%s", primary_id, name)
            return None

        self._store.set(primary_id, secondary_id)
        increment_counter("user_map_heals_total")
        logger.info("user_map_healed primary=%s secondary=%s name=%s", primary_id, secondary_id, name)
        return secondary_id

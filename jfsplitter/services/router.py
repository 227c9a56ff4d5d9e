from __future__ import annotations

import asyncio
import logging

from jfsplitter.core.config import SplitMode
from jfsplitter.core.errors import UpstreamPayloadError
from jfsplitter.domain.proxy import InboundRequest, UpstreamOutcome, UpstreamTarget
from jfsplitter.persistence.user_map import IdentityMappingStore
from jfsplitter.services.dispatcher import UpstreamDispatcher
from jfsplitter.services.endpoints import user_scoped_id
from jfsplitter.services.telemetry import increment_counter
from jfsplitter.services.user_heal import UserMapHealer


logger = logging.getLogger(__name__)


def created_user_id(outcome: UpstreamOutcome) -> str:
    try:
        payload = outcome.json()
    except ValueError as exc:
        raise UpstreamPayloadError("create-user response is not valid JSON") from exc
    user_id = payload.get("Id") if isinstance(payload, dict) else None
    if not isinstance(user_id, str) or not user_id:
        raise UpstreamPayloadError("create-user response has no Id")
    return user_id


class ModeRouter:
    """Chooses which upstream(s) serve a request and which outcome the client sees.

    failover: primary first, secondary only when the primary fails at the
    transport level or answers >= 500.

    mirror_writes / mirror_all: the client always gets the primary's
    outcome; a copy of the request goes to the secondary in a background
    task (writes only, or everything but auth endpoints).
    """

    def __init__(
        self,
        *,
        split_mode: SplitMode,
        dispatcher: UpstreamDispatcher,
        store: IdentityMappingStore,
        healer: UserMapHealer,
        primary: UpstreamTarget,
        secondary: UpstreamTarget,
    ) -> None:
        self._split_mode = split_mode
        self._dispatcher = dispatcher
        self._store = store
        self._healer = healer
        self._primary = primary
        self._secondary = secondary
        self._mirror_tasks: set[asyncio.Task[None]] = set()

    @property
    def split_mode(self) -> SplitMode:
        return self._split_mode

    def should_mirror(self, request: InboundRequest) -> bool:
        if self._split_mode == "failover" or request.is_auth_endpoint:
            return False
        if self._split_mode == "mirror_all":
            return True
        return not request.is_read_method

    async def route(self, request: InboundRequest) -> UpstreamOutcome:
        if self._split_mode == "failover":
            return await self._route_failover(request)
        return await self._route_mirrored(request)

    async def _route_failover(self, request: InboundRequest) -> UpstreamOutcome:
        primary_outcome = await self._dispatcher.dispatch(self._primary, request, request.body)
        if primary_outcome.ok and primary_outcome.status_code < 500:
            return primary_outcome
        increment_counter("failover_secondary_total")
        logger.warning(
            "failover_to_secondary method=%s path=%s primary_status=%s",
            request.method,
            request.path,
            primary_outcome.status_code,
        )
        return await self._dispatcher.dispatch(self._secondary, request, request.body)

    async def _route_mirrored(self, request: InboundRequest) -> UpstreamOutcome:
        primary_task = asyncio.create_task(self._dispatcher.dispatch(self._primary, request, request.body))
        mirrored = self.should_mirror(request)
        if mirrored:
            self._spawn_mirror(request, primary_task)
        # Shielded: a client disconnect must not cancel the call the mirror task may still need.
        primary_outcome = await asyncio.shield(primary_task)
        logger.info(
            "primary_response method=%s target=%s status=%s mirrored=%s",
            request.method,
            request.target,
            primary_outcome.status_code,
            mirrored,
        )
        return primary_outcome

    def _spawn_mirror(self, request: InboundRequest, primary_task: asyncio.Task[UpstreamOutcome]) -> None:
        task = asyncio.create_task(self._mirror(request, primary_task))
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_done)

    def _mirror_done(self, task: asyncio.Task[None]) -> None:
        self._mirror_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("mirror_task_failed", exc_info=exc)

    async def _mirror(self, request: InboundRequest, primary_task: asyncio.Task[UpstreamOutcome]) -> None:
        increment_counter("mirror_requests_total")
        primary_id = user_scoped_id(request.path)
        if primary_id is not None and self._store.get(primary_id) is None:
            await self._healer.heal(primary_id, request)

        secondary_outcome = await self._dispatcher.dispatch(self._secondary, request, request.body)
        if not secondary_outcome.succeeded:
            increment_counter("mirror_failures_total")
            logger.debug(
                "mirror_failed method=%s target=%s status=%s",
                request.method,
                request.target,
                secondary_outcome.status_code,
            )

        if request.is_create_user:
            primary_outcome = await primary_task
            self._correlate_created_user(primary_outcome, secondary_outcome)

    def _correlate_created_user(self, primary_outcome: UpstreamOutcome, secondary_outcome: UpstreamOutcome) -> None:
        if not (primary_outcome.succeeded and secondary_outcome.succeeded):
            logger.info(
                "create_user_not_correlated primary_status=%s secondary_status=%s",
                primary_outcome.status_code,
                secondary_outcome.status_code,
            )
            return
        try:
            primary_id = created_user_id(primary_outcome)
            secondary_id = created_user_id(secondary_outcome)
        except UpstreamPayloadError as exc:
            logger.warning("create_user_parse_failed error=%s", exc)
            return
        self._store.set(primary_id, secondary_id)

    async def wait_for_mirrors(self) -> None:
        while self._mirror_tasks:
            pending = list(self._mirror_tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._mirror_tasks.difference_update(pending)

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import os
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from jfsplitter.core.errors import UserMapError


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserMapDocument(BaseModel):
    # On-disk layout; a2b/b2a/updatedAt are the key names of earlier map files.
    primary_to_secondary: dict[str, str] = Field(
        validation_alias=AliasChoices("primary_to_secondary", "a2b"),
    )
    secondary_to_primary: dict[str, str] = Field(
        validation_alias=AliasChoices("secondary_to_primary", "b2a"),
    )
    updated_at: datetime = Field(
        default_factory=_utc_now,
        validation_alias=AliasChoices("updated_at", "updatedAt"),
    )


class IdentityMappingStore:
    """Bidirectional primary/secondary user id table backed by a JSON file.

    Mutations happen on the event loop without suspension points, so both
    directions change together as far as concurrent request tasks can see.
    Every mutation schedules a background ``persist()``; writes are
    serialized by a lock and coalesce, so a mutation made while a write is
    in flight is always picked up by a later write.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._forward: dict[str, str] = {}
        self._reverse: dict[str, str] = {}
        self._updated_at = _utc_now()
        # Monotonic mutation counter vs. the counter value captured by the last successful write.
        self._version = 0
        self._persisted_version = 0
        self._write_lock = asyncio.Lock()
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def updated_at(self) -> datetime:
        return self._updated_at

    def __len__(self) -> int:
        return len(self._forward)

    def get(self, primary_id: str) -> str | None:
        return self._forward.get(primary_id)

    def get_reverse(self, secondary_id: str) -> str | None:
        return self._reverse.get(secondary_id)

    def snapshot(self) -> UserMapDocument:
        return UserMapDocument(
            primary_to_secondary=dict(self._forward),
            secondary_to_primary=dict(self._reverse),
            updated_at=self._updated_at,
        )

    def load(self) -> None:
        # Startup only: a missing or unreadable file leaves the table empty.
        if not self._path.exists():
            logger.info("user_map_missing path=%s", self._path)
            return
        try:
            document = self._read_document()
        except UserMapError as exc:
            logger.error("user_map_load_failed path=%s error=%s", self._path, exc)
            return
        self._forward = dict(document.primary_to_secondary)
        self._reverse = dict(document.secondary_to_primary)
        self._updated_at = document.updated_at
        logger.info("user_map_loaded path=%s users=%s", self._path, len(self._forward))

    def set(self, primary_id: str, secondary_id: str) -> None:
        if self._forward.get(primary_id) == secondary_id and self._reverse.get(secondary_id) == primary_id:
            return
        # Last write wins; stale counterparts are evicted so each id maps to exactly one peer.
        stale_secondary = self._forward.get(primary_id)
        if stale_secondary is not None and stale_secondary != secondary_id:
            if self._reverse.get(stale_secondary) == primary_id:
                del self._reverse[stale_secondary]
            logger.warning(
                "user_map_conflict primary=%s old_secondary=%s new_secondary=%s",
                primary_id,
                stale_secondary,
                secondary_id,
            )
        stale_primary = self._reverse.get(secondary_id)
        if stale_primary is not None and stale_primary != primary_id:
            if self._forward.get(stale_primary) == secondary_id:
                del self._forward[stale_primary]
            logger.warning(
                "user_map_conflict secondary=%s old_primary=%s new_primary=%s",
                secondary_id,
                stale_primary,
                primary_id,
            )
        self._forward[primary_id] = secondary_id
        self._reverse[secondary_id] = primary_id
        self._updated_at = _utc_now()
        self._version += 1
        logger.info("user_map_set primary=%s secondary=%s", primary_id, secondary_id)
        self._schedule_persist()

    def _schedule_persist(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync callers); the next persist() or flush() writes this mutation.
            return
        task = loop.create_task(self.persist())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def persist(self) -> bool:
        """Write the table to disk; returns False if the write failed."""
        target_version = self._version
        async with self._write_lock:
            if self._persisted_version >= target_version:
                # A write that started after this caller's mutation already captured it.
                return True
            version = self._version
            payload = self.snapshot().model_dump_json(indent=2)
            try:
                await asyncio.to_thread(self._write_document, payload)
            except UserMapError as exc:
                logger.error("user_map_persist_failed path=%s error=%s", self._path, exc)
                return False
            self._persisted_version = version
            logger.debug("user_map_persisted path=%s version=%s", self._path, version)
            return True

    async def flush(self) -> None:
        # Await scheduled writes, then write anything they did not capture.
        while self._pending:
            pending = list(self._pending)
            await asyncio.gather(*pending, return_exceptions=True)
            self._pending.difference_update(pending)
        if self._persisted_version < self._version:
            await self.persist()

    def _read_document(self) -> UserMapDocument:
        try:
            raw = self._path.read_bytes().decode("utf-8")
        except OSError as exc:
            raise UserMapError(str(exc)) from exc
        except UnicodeDecodeError as exc:
            raise UserMapError(f"user map is not utf-8: {exc.reason}") from exc
        try:
            return UserMapDocument.model_validate_json(raw)
        except ValidationError as exc:
            raise UserMapError(f"malformed user map: {exc.error_count()} error(s)") from exc

    def _write_document(self, payload: str) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("user_map_mkdir_failed path=%s error=%s", self._path.parent, exc)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        try:
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise UserMapError(str(exc)) from exc

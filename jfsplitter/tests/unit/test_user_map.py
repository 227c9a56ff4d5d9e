from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from jfsplitter.persistence.user_map import IdentityMappingStore


@pytest.mark.asyncio
async def test_set_updates_both_directions(tmp_path: Path) -> None:
    store = IdentityMappingStore(tmp_path / "user-map.json")
    store.set("p1", "s1")

    assert store.get("p1") == "s1"
    assert store.get_reverse("s1") == "p1"
    assert store.get("missing") is None
    assert store.get_reverse("missing") is None
    await store.flush()


@pytest.mark.asyncio
async def test_set_is_idempotent(tmp_path: Path) -> None:
    store = IdentityMappingStore(tmp_path / "user-map.json")
    store.set("p1", "s1")
    before = store.snapshot()
    store.set("p1", "s1")
    after = store.snapshot()

    assert after.primary_to_secondary == before.primary_to_secondary == {"p1": "s1"}
    assert after.secondary_to_primary == before.secondary_to_primary == {"s1": "p1"}
    assert len(store) == 1
    await store.flush()


@pytest.mark.asyncio
async def test_conflicting_set_keeps_table_injective(tmp_path: Path) -> None:
    store = IdentityMappingStore(tmp_path / "user-map.json")
    store.set("p1", "s1")
    store.set("p1", "s2")

    assert store.get("p1") == "s2"
    assert store.get_reverse("s2") == "p1"
    assert store.get_reverse("s1") is None

    store.set("p9", "s2")
    assert store.get("p9") == "s2"
    assert store.get_reverse("s2") == "p9"
    assert store.get("p1") is None
    await store.flush()


@pytest.mark.asyncio
async def test_persist_then_reload_round_trips(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "user-map.json"
    store = IdentityMappingStore(path)
    store.set("p1", "s1")
    store.set("p2", "s2")
    await store.flush()

    reloaded = IdentityMappingStore(path)
    reloaded.load()

    assert reloaded.snapshot().primary_to_secondary == {"p1": "s1", "p2": "s2"}
    assert reloaded.snapshot().secondary_to_primary == {"s1": "p1", "s2": "p2"}
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert set(raw) == {"primary_to_secondary", "secondary_to_primary", "updated_at"}


@pytest.mark.asyncio
async def test_mutations_during_write_are_not_lost(tmp_path: Path) -> None:
    path = tmp_path / "user-map.json"
    store = IdentityMappingStore(path)
    for index in range(20):
        store.set(f"p{index}", f"s{index}")
        if index % 3 == 0:
            await asyncio.sleep(0)
    await store.flush()

    reloaded = IdentityMappingStore(path)
    reloaded.load()
    assert len(reloaded) == 20
    assert reloaded.get("p19") == "s19"


@pytest.mark.asyncio
async def test_persist_without_changes_skips_write(tmp_path: Path) -> None:
    path = tmp_path / "user-map.json"
    store = IdentityMappingStore(path)

    assert await store.persist() is True
    assert not path.exists()


def test_load_missing_file_starts_empty(tmp_path: Path) -> None:
    store = IdentityMappingStore(tmp_path / "absent.json")
    store.load()
    assert len(store) == 0


@pytest.mark.parametrize(
    "content",
    [
        b"{not json",
        json.dumps({"primary_to_secondary": {"p1": "s1"}}).encode("utf-8"),
        json.dumps({"primary_to_secondary": {"p1": 5}, "secondary_to_primary": {}}).encode("utf-8"),
        json.dumps(["p1", "s1"]).encode("utf-8"),
        b'{"a2b": {"\xff\xfe": "x"}, "b2a": {}}',
    ],
)
def test_load_malformed_file_starts_empty(tmp_path: Path, content: bytes) -> None:
    path = tmp_path / "user-map.json"
    path.write_bytes(content)
    store = IdentityMappingStore(path)
    store.load()

    assert len(store) == 0
    assert store.get("p1") is None


def test_load_accepts_legacy_layout(tmp_path: Path) -> None:
    path = tmp_path / "user-map.json"
    path.write_text(
        json.dumps(
            {
                "a2b": {"abc123": "xyz789"},
                "b2a": {"xyz789": "abc123"},
                "updatedAt": "2024-05-01T10:00:00.000Z",
            }
        ),
        encoding="utf-8",
    )
    store = IdentityMappingStore(path)
    store.load()

    assert store.get("abc123") == "xyz789"
    assert store.get_reverse("xyz789") == "abc123"
    assert store.updated_at.year == 2024


@pytest.mark.asyncio
async def test_persist_failure_keeps_memory_state(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = IdentityMappingStore(blocker / "user-map.json")
    store.set("p1", "s1")
    await store.flush()

    assert await store.persist() is False
    assert store.get("p1") == "s1"


def test_set_without_running_loop_defers_persist(tmp_path: Path) -> None:
    path = tmp_path / "user-map.json"
    store = IdentityMappingStore(path)
    store.set("p1", "s1")

    assert not path.exists()
    asyncio.run(store.flush())
    assert json.loads(path.read_text(encoding="utf-8"))["primary_to_secondary"] == {"p1": "s1"}

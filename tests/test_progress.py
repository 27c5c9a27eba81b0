import asyncio

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import async_sessionmaker

from quiz_tutor.core.exceptions import InvalidInput
from quiz_tutor.core.progress import (
    InMemoryProgressStore,
    ProgressUpdate,
    SqlProgressStore,
    build_progress_update,
    union_tags,
)
from quiz_tutor.core.questions import ScoringResult
from quiz_tutor.core.weakness import WeaknessReport
from quiz_tutor.db import build_engine, ensure_schema


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryProgressStore()
        return
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'progress.db'}")
    await ensure_schema(engine)
    yield SqlProgressStore(session_factory=async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


def test_union_tags_keeps_first_seen_order():
    assert union_tags(["a", "b"], ["b", "c", "a"]) == ["a", "b", "c"]


def test_build_progress_update_uses_quiz_topic(example_quiz):
    update = build_progress_update(
        example_quiz,
        ScoringResult(score=50),
        WeaknessReport(weak_areas=["w"], strengths=["s"])
    )
    assert update == ProgressUpdate(topic="Biology", weak_areas=["w"], strengths=["s"], score=50)


async def test_merge_creates_then_unions(store):
    await store.merge("u1", ProgressUpdate(topic="Biology", weak_areas=["cells", "osmosis"], strengths=["atp"], score=40))
    record = await store.merge("u1", ProgressUpdate(topic="Biology", weak_areas=["osmosis", "enzymes"], score=80))

    assert record.weak_areas == ["cells", "osmosis", "enzymes"]
    assert record.strengths == ["atp"]
    assert record.progress_score == 80
    assert record.last_updated is not None


async def test_merge_never_drops_a_flipped_tag(store):
    await store.merge("u1", ProgressUpdate(topic="Biology", weak_areas=["osmosis"]))
    record = await store.merge("u1", ProgressUpdate(topic="Biology", strengths=["osmosis"]))

    assert record.weak_areas == ["osmosis"]
    assert record.strengths == ["osmosis"]


async def test_records_are_scoped_per_user_and_topic(store):
    await store.merge("u1", ProgressUpdate(topic="Biology", weak_areas=["cells"]))
    await store.merge("u1", ProgressUpdate(topic="Chemistry", weak_areas=["bonds", "cells"]))
    await store.merge("u2", ProgressUpdate(topic="Biology", weak_areas=["genetics"]))

    assert [r.topic for r in await store.list_for_user("u1")] == ["Biology", "Chemistry"]
    assert await store.weak_areas_for_user("u1") == ["cells", "bonds"]
    assert await store.weak_areas_for_user("u1", topic="Chemistry") == ["bonds", "cells"]
    assert (await store.get("u2", "Biology")).weak_areas == ["genetics"]
    assert await store.get("u2", "Chemistry") is None


async def test_remove_weak_areas_is_explicit(store):
    await store.merge("u1", ProgressUpdate(topic="Biology", weak_areas=["cells", "osmosis"], strengths=["atp"]))
    record = await store.remove_weak_areas("u1", "Biology", ["cells"])

    assert record.weak_areas == ["osmosis"]
    assert record.strengths == ["atp"]
    assert (await store.get("u1", "Biology")).weak_areas == ["osmosis"]


async def test_remove_on_unknown_topic_returns_none(store):
    assert await store.remove_weak_areas("u1", "History", ["dates"]) is None


async def test_merge_requires_a_topic(store):
    with pytest.raises(InvalidInput):
        await store.merge("u1", ProgressUpdate(topic=" "))


class RacingSqlStore(SqlProgressStore):
    """Holds every first lookup until two writers have both seen no record"""

    def __init__(self, session_factory):
        super().__init__(session_factory=session_factory)
        self.waiting = 0
        self.both_looked = asyncio.Event()

    async def _fetch(self, session, user_id, topic, for_update=False):
        row = await super()._fetch(session, user_id, topic, for_update)
        if not self.both_looked.is_set():
            self.waiting += 1
            if self.waiting >= 2:
                self.both_looked.set()
            await asyncio.wait_for(self.both_looked.wait(), timeout=5)
        return row


async def test_concurrent_first_merges_union_both_passes(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'progress.db'}")
    await ensure_schema(engine)
    store = RacingSqlStore(async_sessionmaker(engine, expire_on_commit=False))
    try:
        first, second = await asyncio.gather(
            store.merge("u1", ProgressUpdate(topic="Biology", weak_areas=["cells"], strengths=["atp"])),
            store.merge("u1", ProgressUpdate(topic="Biology", weak_areas=["osmosis"], strengths=["dna"])),
        )
        record = await store.get("u1", "Biology")
        records = await store.list_for_user("u1")
    finally:
        await engine.dispose()

    assert {first.topic, second.topic} == {"Biology"}
    assert sorted(record.weak_areas) == ["cells", "osmosis"]
    assert sorted(record.strengths) == ["atp", "dna"]
    assert len(records) == 1


def test_merge_lookup_locks_the_row():
    locked = SqlProgressStore.record_query("u1", "Biology", for_update=True)
    plain = SqlProgressStore.record_query("u1", "Biology")

    assert "FOR UPDATE" in str(locked.compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" not in str(plain.compile(dialect=postgresql.dialect()))

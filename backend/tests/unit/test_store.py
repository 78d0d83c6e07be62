from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from recoda.core.errors import NotFound, PersistenceFailure
from recoda.core.handles import HandleRegistry
from recoda.schemas.recording import LocalArtifact
from recoda.services.store import ArtifactStore

BASE = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def make_artifact(name="rec-2024-05-01_10-00.webm", minutes=0, blob=b"video-bytes", synced=False):
    return LocalArtifact(
        blob=blob,
        filename=name,
        duration=4,
        mime="video/webm",
        ts=BASE + timedelta(minutes=minutes),
        synced=synced,
    )


@pytest.mark.asyncio
async def test_save_and_get(store):
    new_id = await store.save(make_artifact())
    stored = await store.get(new_id)
    assert stored.id == new_id
    assert stored.blob == b"video-bytes"
    assert stored.size == len(b"video-bytes")
    assert stored.ts == BASE
    assert stored.synced is False


@pytest.mark.asyncio
async def test_get_missing(store):
    with pytest.raises(NotFound):
        await store.get(999)


@pytest.mark.asyncio
async def test_ids_are_never_reused(store):
    first = await store.save(make_artifact("a.webm"))
    second = await store.save(make_artifact("b.webm"))
    assert await store.delete(second)
    third = await store.save(make_artifact("c.webm"))
    assert first < second < third


@pytest.mark.asyncio
async def test_put_replaces_same_filename(store):
    await store.save(make_artifact("dup.webm", blob=b"old"))
    await store.save(make_artifact("dup.webm", blob=b"older"))
    new_id = await store.put(make_artifact("dup.webm", blob=b"new"))

    items = await store.load_all()
    assert [a.id for a in items] == [new_id]
    assert items[0].blob == b"new"
    assert await store.filenames() == {"dup.webm"}


@pytest.mark.asyncio
async def test_load_all_newest_first_with_handles(store, handles):
    await store.save(make_artifact("old.webm", minutes=0))
    await store.save(make_artifact("new.webm", minutes=5))
    await store.save(make_artifact("mid.webm", minutes=2))

    items = await store.load_all()
    assert [a.filename for a in items] == ["new.webm", "mid.webm", "old.webm"]
    assert len(handles) == 3
    assert handles.resolve(items[0].handle.url) == b"video-bytes"


@pytest.mark.asyncio
async def test_load_all_empty(store):
    assert await store.load_all() == []


@pytest.mark.asyncio
async def test_mark_synced(store):
    new_id = await store.save(make_artifact())
    await store.mark_synced(new_id)
    assert (await store.get(new_id)).synced is True


@pytest.mark.asyncio
async def test_mark_synced_missing_is_noop(store):
    await store.mark_synced(12345)
    assert await store.load_all() == []


@pytest.mark.asyncio
async def test_delete_missing_returns_false(store):
    assert await store.delete(42) is False


@pytest.mark.asyncio
async def test_exists_and_clear(store):
    await store.save(make_artifact("x.webm"))
    assert await store.exists("x.webm")
    assert not await store.exists("y.webm")
    await store.clear()
    assert await store.filenames() == set()


@pytest.mark.asyncio
async def test_write_failure_is_persistence_failure():
    factory = MagicMock()
    session = factory.return_value
    session.commit.side_effect = OperationalError("INSERT", {}, Exception("disk full"))
    store = ArtifactStore(factory, HandleRegistry())

    with pytest.raises(PersistenceFailure):
        await store.save(make_artifact())
    session.rollback.assert_called_once()
    session.close.assert_called_once()

import asyncio
from typing import Callable, List, Optional, Set, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from recoda.core.errors import NotFound, PersistenceFailure
from recoda.core.formats import parse_timestamp
from recoda.core.handles import HandleRegistry
from recoda.core.logger import get_logger
from recoda.db.models import Recording as RecordingModel
from recoda.schemas.recording import LocalArtifact

logger = get_logger(__name__)

T = TypeVar("T")


class ArtifactStore:
    """Durable storage for recording blobs and their metadata.

    Work runs on a worker thread; a single lock serializes every operation so
    concurrent callers never interleave writes to the same row.
    """

    def __init__(self, session_factory: sessionmaker, handles: HandleRegistry):
        self._session_factory = session_factory
        self.handles = handles
        self._lock = asyncio.Lock()

    async def _run(self, work: Callable[[Session], T], write: bool = False) -> T:
        async with self._lock:
            return await asyncio.to_thread(self._in_session, work, write)

    def _in_session(self, work: Callable[[Session], T], write: bool) -> T:
        db = self._session_factory()
        try:
            result = work(db)
            if write:
                db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            if write:
                raise PersistenceFailure(f"Local store write failed: {e}") from e
            raise
        finally:
            db.close()

    @staticmethod
    def _row(artifact: LocalArtifact) -> RecordingModel:
        return RecordingModel(
            blob=artifact.blob,
            filename=artifact.filename,
            duration=int(artifact.duration or 0),
            mime=artifact.mime,
            ts=artifact.ts.isoformat(),
            size=len(artifact.blob),
            synced=bool(artifact.synced),
        )

    def _artifact(self, row: RecordingModel) -> LocalArtifact:
        return LocalArtifact(
            id=row.id,
            blob=row.blob,
            filename=row.filename,
            duration=row.duration or 0,
            mime=row.mime,
            ts=parse_timestamp(row.ts),
            size=row.size or len(row.blob),
            synced=bool(row.synced),
        )

    async def save(self, artifact: LocalArtifact) -> int:
        """Insert the artifact under a new id and return the id."""

        def work(db: Session) -> int:
            row = self._row(artifact)
            db.add(row)
            db.flush()
            return row.id

        new_id = await self._run(work, write=True)
        logger.info(f"Saved {artifact.filename} as #{new_id}")
        return new_id

    async def put(self, artifact: LocalArtifact) -> int:
        """Replace every entry sharing the artifact's filename with this one."""

        def work(db: Session) -> int:
            stale = db.query(RecordingModel).filter(RecordingModel.filename == artifact.filename)
            removed = stale.delete(synchronize_session=False)
            if removed:
                logger.debug(f"Replacing {removed} entr(y/ies) for {artifact.filename}")
            row = self._row(artifact)
            db.add(row)
            db.flush()
            return row.id

        return await self._run(work, write=True)

    async def load_all(self) -> List[LocalArtifact]:
        """Every artifact, newest first, each with a fresh view handle.

        The caller owns the handles and must revoke them.
        """

        def work(db: Session) -> List[RecordingModel]:
            rows = db.query(RecordingModel).all()
            for row in rows:
                db.expunge(row)
            return rows

        rows = await self._run(work)
        artifacts = [self._artifact(row) for row in rows]
        artifacts.sort(key=lambda a: a.ts, reverse=True)
        for artifact in artifacts:
            artifact.handle = self.handles.create(artifact.blob, artifact.mime)
        return artifacts

    async def get(self, recording_id: int) -> LocalArtifact:
        def work(db: Session) -> Optional[RecordingModel]:
            row = db.get(RecordingModel, recording_id)
            if row is not None:
                db.expunge(row)
            return row

        row = await self._run(work)
        if row is None:
            raise NotFound(f"Recording #{recording_id} not found")
        return self._artifact(row)

    async def delete(self, recording_id: int) -> bool:
        """Remove by id. Returns False when there was nothing to remove."""

        def work(db: Session) -> bool:
            row = db.get(RecordingModel, recording_id)
            if row is None:
                return False
            db.delete(row)
            return True

        return await self._run(work, write=True)

    async def clear(self):
        await self._run(lambda db: db.query(RecordingModel).delete(), write=True)

    async def mark_synced(self, recording_id: int):
        def work(db: Session):
            row = db.get(RecordingModel, recording_id)
            if row is None:
                # Deleted meanwhile; nothing left to flag
                return
            row.synced = True

        await self._run(work, write=True)

    async def exists(self, filename: str) -> bool:
        def work(db: Session) -> bool:
            query = db.query(RecordingModel.id).filter(RecordingModel.filename == filename)
            return query.first() is not None

        return await self._run(work)

    async def filenames(self) -> Set[str]:
        rows = await self._run(lambda db: db.query(RecordingModel.filename).all())
        return {row[0] for row in rows}

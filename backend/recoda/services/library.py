from pathlib import Path
from typing import List, Optional, Union

import aiofiles

from recoda.core.errors import ExportError, NotFound, PersistenceFailure
from recoda.core.events import Observable
from recoda.core.formats import parse_timestamp
from recoda.core.handles import HandleRegistry
from recoda.core.logger import get_logger
from recoda.schemas.recording import Artifact, LocalArtifact, RemoteArtifact
from recoda.services.remote import RemoteClient
from recoda.services.store import ArtifactStore

logger = get_logger(__name__)


class RecordingLibrary:
    """Newest-first list of the recordings the user can see and play.

    Holds the view handles of local artifacts and releases them when an
    artifact leaves the list. Tracks which artifact is in the preview.
    """

    def __init__(self, store: ArtifactStore, handles: HandleRegistry, exports_dir: Path):
        self.store = store
        self.handles = handles
        self.exports_dir = Path(exports_dir)
        self.changes: Observable[List[Artifact]] = Observable()
        self._items: List[Artifact] = []
        self._preview: Optional[Artifact] = None

    @property
    def items(self) -> List[Artifact]:
        return list(self._items)

    @property
    def preview(self) -> Optional[Artifact]:
        return self._preview

    def set_preview(self, artifact: Optional[Artifact]):
        outgoing = self._preview
        self._preview = artifact
        if outgoing is not None and outgoing is not artifact:
            if not any(a is outgoing for a in self._items):
                # Replaced in the list while it was on display
                self._release(outgoing)

    def __len__(self) -> int:
        return len(self._items)

    def _release(self, artifact: Artifact):
        if isinstance(artifact, LocalArtifact) and artifact.handle is not None:
            self.handles.revoke(artifact.handle.url)
            artifact.handle = None

    def _sort(self):
        self._items.sort(key=lambda a: a.ts, reverse=True)

    def _changed(self):
        self.changes.emit(self.items)

    async def load(self) -> List[Artifact]:
        """(Re)load the local artifacts from the store, keeping remote-only entries."""
        saved = await self.store.load_all()
        local_names = {a.filename for a in saved}
        remote_only = [
            a for a in self._items if isinstance(a, RemoteArtifact) and a.filename not in local_names
        ]
        preview_name = self._preview.filename if self._preview else None
        for artifact in self._items:
            self._release(artifact)
        if self._preview is not None:
            self._release(self._preview)
        self._items = saved + remote_only
        self._sort()
        self._preview = self.find(preview_name) if preview_name else None
        self._changed()
        return self.items

    async def add(self, artifact: LocalArtifact) -> LocalArtifact:
        """Persist and list a fresh recording.

        A store failure does not lose the recording: it stays listed and
        playable, flagged ``saved=False``.
        """
        try:
            artifact.id = await self.store.put(artifact)
            artifact.saved = True
        except PersistenceFailure as e:
            logger.error(f"Failed to persist recording {artifact.filename}: {e}")
            artifact.saved = False
        if artifact.handle is None:
            artifact.handle = self.handles.create(artifact.blob, artifact.mime)

        stale = [a for a in self._items if a.filename == artifact.filename]
        self._items = [a for a in self._items if a.filename != artifact.filename]
        for old in stale:
            if old is not self._preview:
                self._release(old)
        self._items.insert(0, artifact)
        self._sort()
        self._changed()
        return artifact

    def find(self, filename: str) -> Optional[Artifact]:
        for artifact in self._items:
            if artifact.filename == filename:
                return artifact
        return None

    def get(self, recording_id: int) -> LocalArtifact:
        for artifact in self._items:
            if isinstance(artifact, LocalArtifact) and artifact.id == recording_id:
                return artifact
        raise NotFound(f"Recording #{recording_id} not found")

    async def remove(self, artifact: Artifact):
        if isinstance(artifact, LocalArtifact) and artifact.id is not None:
            await self.store.delete(artifact.id)
        self._items = [a for a in self._items if a is not artifact]
        if self._preview is artifact:
            self._preview = None
        self._release(artifact)
        self._changed()
        logger.info(f"Removed {artifact.filename}")

    def merge_remote(self, records: List[dict]) -> int:
        """List remote-only recordings by filename. Returns how many were added."""
        known = {a.filename for a in self._items}
        added = 0
        for record in records:
            filename = record.get("filename")
            if not filename or filename in known:
                continue
            self._items.append(
                RemoteArtifact(
                    filename=filename,
                    duration=int(record.get("duration") or 0),
                    mime=record.get("mime_type") or record.get("mime") or "video/webm",
                    size=int(record.get("size") or 0),
                    ts=parse_timestamp(record.get("created_at") or record.get("ts")),
                    synced=True,
                    remote_ref=filename,
                )
            )
            known.add(filename)
            added += 1
        if added:
            self._sort()
            self._changed()
            logger.info(f"Found {added} remote recording(s)")
        return added

    async def refresh_remote(self, remote: RemoteClient, token: str) -> int:
        return self.merge_remote(await remote.list_recordings(token))

    def unsynced_count(self) -> int:
        return sum(1 for a in self._items if not a.synced)

    def sync_status(self) -> dict:
        """Whether a sync makes sense right now, with a human-readable reason."""
        unsynced = self.unsynced_count()
        if not self._items:
            return {"enabled": False, "title": "No recordings to sync"}
        if unsynced == 0:
            return {"enabled": False, "title": "All recordings already synced"}
        plural = "s" if unsynced != 1 else ""
        return {"enabled": True, "title": f"Sync {unsynced} recording{plural}"}

    async def fetch_for_playback(
        self,
        artifact: Union[LocalArtifact, RemoteArtifact],
        remote: Optional[RemoteClient] = None,
        token: Optional[str] = None,
    ) -> bytes:
        if isinstance(artifact, LocalArtifact):
            if artifact.handle is not None and artifact.handle.url in self.handles:
                return self.handles.resolve(artifact.handle.url)
            return artifact.blob
        if remote is None or not token:
            raise NotFound(f"{artifact.filename} is only available remotely; log in to play it")
        blob, _ = await remote.fetch_recording_file(token, artifact.remote_ref)
        return blob

    async def export(
        self,
        artifact: Artifact,
        fmt: Optional[str] = None,
        remote: Optional[RemoteClient] = None,
        token: Optional[str] = None,
    ) -> Path:
        """Write the recording to the exports directory in its native format."""
        native = artifact.native_format
        fmt = fmt or native
        if fmt != native:
            raise ExportError(
                f"{artifact.filename} was recorded as {native.upper()}; "
                f"set format to {fmt.upper()} before recording"
            )
        blob = await self.fetch_for_playback(artifact, remote=remote, token=token)
        base_name = artifact.filename.rsplit(".", 1)[0]
        self.exports_dir.mkdir(parents=True, exist_ok=True)
        target = self.exports_dir / f"{base_name}.{fmt}"
        async with aiofiles.open(target, "wb") as f:
            await f.write(blob)
        logger.info(f"Exported {artifact.filename} to {target}")
        return target

    def close(self):
        for artifact in self._items:
            self._release(artifact)
        if self._preview is not None:
            self._release(self._preview)
        self._preview = None

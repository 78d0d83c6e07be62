from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Union

from recoda.core.errors import PersistenceFailure, SyncFailure
from recoda.core.formats import parse_timestamp, to_iso
from recoda.core.logger import get_logger
from recoda.schemas.recording import LocalArtifact
from recoda.services.remote import RemoteClient
from recoda.services.store import ArtifactStore

logger = get_logger(__name__)


@dataclass
class SyncReport:
    uploaded: List[str] = field(default_factory=list)
    downloaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict:
        return {
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def _filename(item: Union[str, dict]) -> str:
    return item if isinstance(item, str) else item.get("filename", "")


class SyncEngine:
    """Reconciles the local store with the remote store by filename.

    Items are transferred one at a time. A confirmed upload flips the local
    ``synced`` flag immediately, so a later run only moves what the remote
    still lacks. With ``continue_on_error`` the remaining items are still
    attempted after a failure; either way a failed item makes the run raise
    ``SyncFailure`` carrying the report.
    """

    def __init__(self, store: ArtifactStore, remote: RemoteClient, continue_on_error: bool = False):
        self.store = store
        self.remote = remote
        self.continue_on_error = continue_on_error

    async def run(self, token: str) -> SyncReport:
        if not token:
            raise SyncFailure("Please log in to sync recordings", kind="auth")
        await self.remote.current_user(token)

        report = SyncReport()
        local = await self.store.load_all()
        try:
            manifest = [{"filename": a.filename, "created_at": to_iso(a.ts)} for a in local]
            to_upload, to_download = await self.remote.diff(token, manifest)
            logger.info(f"Sync plan: {len(to_upload)} to upload, {len(to_download)} to download")

            by_name = {a.filename: a for a in local}
            for item in to_upload:
                name = _filename(item)
                artifact = by_name.get(name)
                if artifact is None:
                    report.skipped.append(name)
                    continue
                await self._attempt(report, name, lambda a=artifact: self._upload(token, a))
                if name not in report.failed:
                    report.uploaded.append(name)

            for item in to_download:
                name = _filename(item)
                if not self._download_ref(item):
                    report.skipped.append(name)
                    continue
                await self._attempt(report, name, lambda i=item: self._download(i))
                if name not in report.failed:
                    report.downloaded.append(name)
        finally:
            for artifact in local:
                if artifact.handle is not None:
                    self.store.handles.revoke(artifact.handle.url)

        if report.failed:
            failed = ", ".join(sorted(report.failed))
            raise SyncFailure(f"Sync failed for {failed}", kind="transfer", report=report)
        logger.info(f"Sync complete: {len(report.uploaded)} up, {len(report.downloaded)} down")
        return report

    async def _attempt(self, report: SyncReport, name: str, transfer: Callable[[], Awaitable[None]]):
        try:
            try:
                await transfer()
            except (KeyError, TypeError, ValueError) as e:
                raise SyncFailure(f"Malformed server response for {name}: {e!r}", kind="server") from e
        except (SyncFailure, PersistenceFailure) as e:
            logger.error(f"Sync of {name} failed: {e}")
            report.failed[name] = str(e)
            kind = getattr(e, "kind", "transfer")
            if kind == "auth" or not self.continue_on_error:
                raise SyncFailure(str(e), kind=kind, report=report) from e

    async def _upload(self, token: str, artifact: LocalArtifact):
        signed = await self.remote.sign_upload(token, artifact.filename)
        if not isinstance(signed, dict) or not signed.get("signedUrl"):
            raise SyncFailure(f"No upload URL for {artifact.filename} in server response", kind="server")
        logger.debug(f"Uploading {artifact.filename} to {signed.get('path')}")
        await self.remote.put_blob(signed["signedUrl"], artifact.blob, artifact.mime)
        await self.remote.register_recording(
            token,
            filename=artifact.filename,
            duration=artifact.duration,
            size=artifact.size,
            mime_type=artifact.mime,
        )
        await self.store.mark_synced(artifact.id)
        logger.info(f"Uploaded {artifact.filename}")

    @staticmethod
    def _download_ref(item: dict) -> str:
        if isinstance(item, str):
            return ""
        return item.get("downloadUrl") or item.get("signedUrl") or ""

    async def _download(self, item: dict):
        blob, content_type = await self.remote.fetch_blob(self._download_ref(item))
        artifact = LocalArtifact(
            blob=blob,
            filename=item["filename"],
            duration=int(item.get("duration") or 0),
            mime=item.get("mime_type") or content_type or "application/octet-stream",
            ts=parse_timestamp(item["created_at"]),
            synced=True,
        )
        await self.store.put(artifact)
        logger.info(f"Downloaded {artifact.filename}")

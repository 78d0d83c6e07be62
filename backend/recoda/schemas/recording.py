from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from recoda.core.formats import native_format
from recoda.core.handles import BlobHandle


class RecordingBase(BaseModel):
    filename: str
    duration: int = 0
    mime: str
    size: int = 0
    ts: datetime
    synced: bool = False

    @property
    def native_format(self) -> str:
        return native_format(self.mime)


class Recording(RecordingBase):
    """API view of a stored recording."""

    id: Optional[int] = None
    origin: Literal["local", "remote"] = "local"
    url: Optional[str] = None
    saved: bool = True

    model_config = ConfigDict(from_attributes=True)


class LocalArtifact(RecordingBase):
    """A recording whose bytes we hold."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    origin: Literal["local"] = "local"
    id: Optional[int] = None
    blob: bytes = Field(default=b"", repr=False, exclude=True)
    handle: Optional[BlobHandle] = Field(default=None, exclude=True)
    # False when the local store write failed; the artifact still plays
    saved: bool = True

    def model_post_init(self, __context):
        if not self.size:
            self.size = len(self.blob)


class RemoteArtifact(RecordingBase):
    """A recording known to the remote store but not held locally."""

    origin: Literal["remote"] = "remote"
    remote_ref: str


Artifact = Union[LocalArtifact, RemoteArtifact]


def to_view(artifact: Artifact) -> Recording:
    data = artifact.model_dump(include=set(RecordingBase.model_fields))
    if isinstance(artifact, LocalArtifact):
        return Recording(
            **data,
            id=artifact.id,
            url=artifact.handle.url if artifact.handle else None,
            saved=artifact.saved,
        )
    return Recording(**data, origin="remote")

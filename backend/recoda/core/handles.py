import uuid
from dataclasses import dataclass
from typing import Dict, Tuple

from recoda.core.errors import NotFound


@dataclass(frozen=True)
class BlobHandle:
    url: str
    mime: str
    size: int


class HandleRegistry:
    """Locally-resolvable views of artifact blobs.

    Whoever creates a handle owns it and must revoke it once the artifact is
    no longer displayed.
    """

    def __init__(self, prefix: str = "blob:recoda/"):
        self.prefix = prefix
        self._blobs: Dict[str, Tuple[bytes, str]] = {}

    def create(self, blob: bytes, mime: str) -> BlobHandle:
        url = f"{self.prefix}{uuid.uuid4()}"
        self._blobs[url] = (blob, mime)
        return BlobHandle(url=url, mime=mime, size=len(blob))

    def resolve(self, url: str) -> bytes:
        try:
            return self._blobs[url][0]
        except KeyError:
            raise NotFound(f"No live handle for {url}") from None

    def revoke(self, url: str):
        self._blobs.pop(url, None)

    def __contains__(self, url: str) -> bool:
        return url in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)

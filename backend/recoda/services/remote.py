from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from recoda.core.errors import SyncFailure
from recoda.core.logger import get_logger

logger = get_logger(__name__)


class RemoteClient:
    """Client for the hosted recordings API and its signed transfer URLs.

    Every call that talks to the API takes the caller's bearer token; the
    signed URLs carry their own authorization.
    """

    def __init__(self, base_url: str, http: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self.http = http

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _auth(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @staticmethod
    def _error_message(response: httpx.Response, fallback: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return fallback
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return fallback

    def _check(self, response: httpx.Response, fallback: str):
        if response.status_code in (401, 403):
            raise SyncFailure(self._error_message(response, "Not authenticated"), kind="auth")
        if response.is_error:
            raise SyncFailure(
                f"{self._error_message(response, fallback)} (HTTP {response.status_code})",
                kind="server",
            )

    async def _request(self, method: str, url: str, fallback: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise SyncFailure(f"{fallback}: {e}", kind="network") from e
        self._check(response, fallback)
        return response

    @staticmethod
    def _json(response: httpx.Response, fallback: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise SyncFailure(f"{fallback}: malformed response from server", kind="server") from e

    async def current_user(self, token: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", self._url("/api/auth/user"), "Session check failed", headers=self._auth(token)
        )
        return self._json(response, "Session check failed")

    async def list_recordings(self, token: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", self._url("/api/recordings"), "Failed to list recordings", headers=self._auth(token)
        )
        records = self._json(response, "Failed to list recordings")
        if not isinstance(records, list):
            raise SyncFailure("Failed to list recordings: malformed response from server", kind="server")
        return records

    async def register_recording(
        self, token: str, filename: str, duration: int, size: int, mime_type: str
    ) -> Dict[str, Any]:
        payload = {"filename": filename, "duration": duration, "size": size, "mime_type": mime_type}
        response = await self._request(
            "POST",
            self._url("/api/recordings"),
            "Failed to save metadata",
            headers=self._auth(token),
            json=payload,
        )
        return self._json(response, "Failed to save metadata")

    async def diff(self, token: str, manifest: List[Dict[str, str]]) -> Tuple[List[dict], List[dict]]:
        """Submit the local manifest; returns ``(to_upload, to_download)``."""
        response = await self._request(
            "POST",
            self._url("/api/recordings/sync"),
            "Server sync error",
            headers=self._auth(token),
            json={"localRecordings": manifest},
        )
        body = self._json(response, "Server sync error")
        if not isinstance(body, dict):
            raise SyncFailure("Server sync error: malformed response from server", kind="server")
        return list(body.get("toUpload") or []), list(body.get("toDownload") or [])

    async def sign_upload(self, token: str, filename: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            self._url("/api/upload/sign"),
            "Failed to get upload signature",
            headers=self._auth(token),
            json={"filename": filename},
        )
        return self._json(response, "Failed to get upload signature")

    async def put_blob(self, signed_url: str, blob: bytes, mime: str):
        await self._request(
            "PUT", signed_url, "Upload to storage failed", content=blob, headers={"Content-Type": mime}
        )

    async def fetch_blob(self, url: str) -> Tuple[bytes, Optional[str]]:
        response = await self._request("GET", url, "Download failed")
        content_type = response.headers.get("content-type")
        return response.content, content_type

    async def fetch_recording_file(self, token: str, filename: str) -> Tuple[bytes, Optional[str]]:
        response = await self._request(
            "GET",
            self._url(f"/api/recordings/{quote(filename)}/file"),
            "Failed to load video from server",
            headers=self._auth(token),
        )
        return response.content, response.headers.get("content-type")

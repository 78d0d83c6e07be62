import json
from datetime import datetime, timezone
from urllib.parse import unquote

import httpx
import pytest
from fastapi.testclient import TestClient

from recoda.core.audio_processor import AudioGraph
from recoda.core.config import Settings
from recoda.core.handles import HandleRegistry
from recoda.core.media import AudioTrack, MediaStream, VideoTrack
from recoda.db.base import make_engine, make_session_factory
from recoda.main import create_app
from recoda.services.library import RecordingLibrary
from recoda.services.recorder import ScreenRecorder
from recoda.services.remote import RemoteClient
from recoda.services.store import ArtifactStore

REMOTE_URL = "http://remote.test"
GOOD_TOKEN = "good-token"
FIXED_NOW = datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)
WEBM_ONLY = ("video/webm;codecs=vp9,opus", "video/webm")


class CountingVideoTrack(VideoTrack):
    def __init__(self, label=""):
        super().__init__(label)
        self.stop_calls = 0

    def stop(self):
        self.stop_calls += 1
        super().stop()


class CountingAudioTrack(AudioTrack):
    def __init__(self, label="", sample_rate=48000):
        super().__init__(label, sample_rate)
        self.stop_calls = 0

    def stop(self):
        self.stop_calls += 1
        super().stop()


class FakeDevices:
    """Grants every prompt unless told otherwise."""

    def __init__(self, system_audio=True):
        self.system_audio = system_audio
        self.display_error = None
        self.mic_error = None
        self.webcam_error = None
        # Set to an asyncio.Event to hold the webcam prompt open until it is set
        self.webcam_gate = None
        self.display_calls = 0
        self.webcam_calls = 0
        self.screens = []
        self.mics = []
        self.webcams = []

    async def get_display_media(self, video, audio):
        self.display_calls += 1
        if self.display_error is not None:
            raise self.display_error
        tracks = [CountingVideoTrack("screen")]
        if audio and self.system_audio:
            tracks.append(CountingAudioTrack("system"))
        stream = MediaStream(tracks)
        self.screens.append(stream)
        return stream

    async def get_user_media(self, audio=False, video=False):
        if audio:
            if self.mic_error is not None:
                raise self.mic_error
            stream = MediaStream([CountingAudioTrack("mic")])
            self.mics.append(stream)
            return stream
        self.webcam_calls += 1
        if self.webcam_gate is not None:
            await self.webcam_gate.wait()
        if self.webcam_error is not None:
            raise self.webcam_error
        stream = MediaStream([CountingVideoTrack("webcam")])
        self.webcams.append(stream)
        return stream


class FakeEncoder:
    def __init__(self, stream, mime_type, video_bits_per_second):
        self.stream = stream
        self.mime_type = mime_type
        self.video_bits_per_second = video_bits_per_second
        self.state = "inactive"
        self.on_data = None
        self.on_stop = None
        self.start_calls = 0
        self.stop_calls = 0

    def emit(self, chunk):
        if self.on_data:
            self.on_data(chunk)

    def start(self):
        self.start_calls += 1
        self.state = "recording"

    def pause(self):
        self.state = "paused"

    def resume(self):
        self.state = "recording"

    def stop(self):
        self.stop_calls += 1
        self.state = "inactive"
        if self.on_stop:
            self.on_stop()


class FakeEncoderFactory:
    def __init__(self, supported=WEBM_ONLY):
        self.supported = set(supported)
        self.created = []

    def is_type_supported(self, mime):
        return mime in self.supported

    def create(self, stream, mime_type, video_bits_per_second):
        encoder = FakeEncoder(stream, mime_type, video_bits_per_second)
        self.created.append(encoder)
        return encoder


class CountingGraph(AudioGraph):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.close_calls = 0

    def close(self):
        self.close_calls += 1
        super().close()


class FakeRemoteServer:
    """In-memory stand-in for the hosted recordings API and its storage bucket."""

    def __init__(self):
        self.records = {}
        self.blobs = {}
        self.fail_uploads = set()
        self.created_at = {}
        self.requests = []

    def add_recording(self, filename, blob, created_at="2024-04-01T08:00:00.000Z", mime_type="video/webm"):
        self.records[filename] = {
            "filename": filename,
            "duration": 12,
            "size": len(blob),
            "mime_type": mime_type,
            "created_at": created_at,
        }
        self.blobs[filename] = (blob, mime_type)

    def _storage_url(self, filename):
        return f"{REMOTE_URL}/storage/{filename}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = unquote(request.url.path)
        method = request.method

        if path.startswith("/storage/"):
            filename = path[len("/storage/"):]
            if method == "PUT":
                if filename in self.fail_uploads:
                    return httpx.Response(500, json={"error": "Storage unavailable"})
                self.blobs[filename] = (request.content, request.headers.get("content-type"))
                return httpx.Response(200, json={})
            if filename not in self.blobs:
                return httpx.Response(404, json={"error": "Object not found"})
            blob, mime = self.blobs[filename]
            return httpx.Response(200, content=blob, headers={"content-type": mime})

        if request.headers.get("authorization") != f"Bearer {GOOD_TOKEN}":
            return httpx.Response(401, json={"error": "Not authenticated"})

        if path == "/api/auth/user":
            return httpx.Response(200, json={"id": "user-1", "email": "user@example.com"})
        if path == "/api/recordings" and method == "GET":
            return httpx.Response(200, json=list(self.records.values()))
        if path == "/api/recordings" and method == "POST":
            body = json.loads(request.content)
            record = dict(body, created_at=self.created_at.get(body["filename"], "2024-04-01T08:00:00.000Z"))
            self.records[body["filename"]] = record
            return httpx.Response(201, json=record)
        if path == "/api/recordings/sync":
            local = json.loads(request.content)["localRecordings"]
            local_names = {item["filename"] for item in local}
            for item in local:
                self.created_at[item["filename"]] = item["created_at"]
            to_upload = [{"filename": item["filename"]} for item in local if item["filename"] not in self.records]
            to_download = [
                dict(record, downloadUrl=self._storage_url(name))
                for name, record in self.records.items()
                if name not in local_names
            ]
            return httpx.Response(200, json={"toUpload": to_upload, "toDownload": to_download})
        if path == "/api/upload/sign":
            filename = json.loads(request.content)["filename"]
            return httpx.Response(200, json={"signedUrl": self._storage_url(filename), "path": f"user-1/{filename}"})
        if path.startswith("/api/recordings/") and path.endswith("/file"):
            filename = path[len("/api/recordings/"):-len("/file")]
            if filename not in self.blobs:
                return httpx.Response(404, json={"error": "Recording not found"})
            blob, mime = self.blobs[filename]
            return httpx.Response(200, content=blob, headers={"content-type": mime})
        return httpx.Response(404, json={"error": "Unknown route"})


@pytest.fixture(scope="function")
def engine():
    engine = make_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def handles():
    return HandleRegistry()


@pytest.fixture(scope="function")
def store(engine, handles):
    return ArtifactStore(make_session_factory(engine), handles)


@pytest.fixture(scope="function")
def library(store, handles, tmp_path):
    return RecordingLibrary(store, handles, tmp_path / "exports")


@pytest.fixture(scope="function")
def devices():
    return FakeDevices()


@pytest.fixture(scope="function")
def encoders():
    return FakeEncoderFactory()


@pytest.fixture(scope="function")
def graphs():
    return []


@pytest.fixture(scope="function")
def recorder(devices, encoders, library, graphs):
    def graph_factory():
        graph = CountingGraph()
        graphs.append(graph)
        return graph

    return ScreenRecorder(
        devices,
        encoders,
        library,
        graph_factory=graph_factory,
        clock=lambda: FIXED_NOW,
        countdown_interval=0,
        # Ticks are driven by hand in tests
        timer_interval=3600,
        meter_interval=3600,
    )


@pytest.fixture(scope="function")
def events(recorder):
    received = []
    recorder.subscribe(received.append)
    return received


@pytest.fixture(scope="function")
def remote_server():
    return FakeRemoteServer()


@pytest.fixture(scope="function")
def token():
    return GOOD_TOKEN


@pytest.fixture(scope="function")
def remote(remote_server):
    http = httpx.AsyncClient(transport=httpx.MockTransport(remote_server.handler))
    return RemoteClient(REMOTE_URL, http)


@pytest.fixture(scope="function")
def client(tmp_path, remote_server):
    settings = Settings(
        database_url="sqlite://",
        remote_url=REMOTE_URL,
        exports_dir=str(tmp_path / "exports"),
    )
    http = httpx.AsyncClient(transport=httpx.MockTransport(remote_server.handler))
    app = create_app(
        settings=settings,
        devices=FakeDevices(),
        encoders=FakeEncoderFactory(),
        http_client=http,
        clock=lambda: FIXED_NOW,
        countdown_interval=0,
        timer_interval=3600,
        meter_interval=3600,
    )
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def client_without_devices(tmp_path):
    settings = Settings(database_url="sqlite://", exports_dir=str(tmp_path / "exports"))
    with TestClient(create_app(settings=settings)) as c:
        yield c

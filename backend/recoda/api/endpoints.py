import asyncio
import json
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, Response
from pydantic import ValidationError

from recoda.core.errors import (
    CaptureAborted,
    CaptureError,
    ExportError,
    NoSupportedFormat,
    NotFound,
    PermissionDenied,
    RecorderBusy,
    SyncFailure,
)
from recoda.core.logger import get_logger
from recoda.schemas.events import ClientCommand
from recoda.schemas.recording import Artifact, Recording, to_view
from recoda.schemas.settings import CaptureSettings, CaptureStatus, WebcamToggle
from recoda.services.library import RecordingLibrary
from recoda.services.recorder import ScreenRecorder
from recoda.services.remote import RemoteClient
from recoda.services.sync import SyncEngine

router = APIRouter()
logger = get_logger(__name__)


def get_library(request: Request) -> RecordingLibrary:
    return request.app.state.library


def get_remote(request: Request) -> RemoteClient:
    return request.app.state.remote


def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine


def get_recorder(request: Request) -> ScreenRecorder:
    recorder = request.app.state.recorder
    if recorder is None:
        raise HTTPException(status_code=503, detail="No capture devices configured")
    return recorder


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def require_token(token: Optional[str] = Depends(bearer_token)) -> str:
    if not token:
        raise HTTPException(status_code=401, detail="Please log in to sync recordings")
    return token


def _capture_http_error(error: CaptureError) -> HTTPException:
    if isinstance(error, (PermissionDenied, CaptureAborted)):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, NoSupportedFormat):
        return HTTPException(status_code=415, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def _find(library: RecordingLibrary, filename: str) -> Artifact:
    artifact = library.find(filename)
    if artifact is None:
        raise HTTPException(status_code=404, detail="Recording not found")
    return artifact


def _status(recorder: ScreenRecorder) -> CaptureStatus:
    return CaptureStatus(
        state=recorder.state.value,
        elapsed=recorder.timer.seconds,
        mime=recorder.mime,
        settings=recorder.settings,
    )


@router.get("/recordings", response_model=List[Recording])
def get_recordings(
    skip: int = 0,
    limit: int = 100,
    library: RecordingLibrary = Depends(get_library),
) -> List[Recording]:
    """List recordings, newest first.

    Args:
        skip (int, optional): The number of records to skip. Defaults to 0.
        limit (int, optional): The maximum number of records to return. Defaults to 100.
    Returns:
        List[Recording]: Local and remote-only recordings.
    """
    return [to_view(a) for a in library.items[skip : skip + limit]]


@router.get("/recordings/status")
def get_sync_status(library: RecordingLibrary = Depends(get_library)) -> dict:
    return {**library.sync_status(), "count": len(library), "unsynced": library.unsynced_count()}


@router.get("/recordings/{filename}/file")
async def play_recording(
    filename: str,
    library: RecordingLibrary = Depends(get_library),
    remote: RemoteClient = Depends(get_remote),
    token: Optional[str] = Depends(bearer_token),
) -> Response:
    """Return the bytes of a recording for playback.

    Args:
        filename (str): The filename of the recording.
    Returns:
        Response: The raw media with its MIME type.
    """
    artifact = _find(library, filename)
    try:
        blob = await library.fetch_for_playback(artifact, remote=remote, token=token)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncFailure as e:
        logger.error(f"Failed to load {filename} from server: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    library.set_preview(artifact)
    return Response(content=blob, media_type=artifact.mime)


@router.get("/recordings/{filename}/download")
async def download_recording(
    filename: str,
    format: Optional[str] = None,
    library: RecordingLibrary = Depends(get_library),
    remote: RemoteClient = Depends(get_remote),
    token: Optional[str] = Depends(bearer_token),
) -> FileResponse:
    """Download a recording in its native format.

    Args:
        filename (str): The filename of the recording.
        format (str | None, optional): ``mp4`` or ``webm``. Defaults to the native format.
    Returns:
        FileResponse: The exported file.
    """
    artifact = _find(library, filename)
    try:
        path = await library.export(artifact, format, remote=remote, token=token)
    except ExportError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncFailure as e:
        raise HTTPException(status_code=502, detail=str(e))
    except OSError as e:
        logger.error(f"Failed to export {filename}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to export file: {e}")
    media_type = "video/mp4" if path.suffix == ".mp4" else "video/webm"
    return FileResponse(path, media_type=media_type, filename=path.name)


@router.delete("/recordings/{filename}")
async def delete_recording(filename: str, library: RecordingLibrary = Depends(get_library)) -> dict:
    """Delete a recording.

    Args:
        filename (str): The filename of the recording.
    Returns:
        dict: The deletion status.
    """
    artifact = _find(library, filename)
    await library.remove(artifact)
    return {"status": "ok", "filename": filename}


@router.post("/recordings/remote/refresh")
async def refresh_remote_recordings(
    library: RecordingLibrary = Depends(get_library),
    remote: RemoteClient = Depends(get_remote),
    token: str = Depends(require_token),
) -> dict:
    try:
        added = await library.refresh_remote(remote, token)
    except SyncFailure as e:
        raise HTTPException(status_code=401 if e.kind == "auth" else 502, detail=str(e))
    return {"added": added}


@router.post("/sync")
async def sync_recordings(
    library: RecordingLibrary = Depends(get_library),
    engine: SyncEngine = Depends(get_sync_engine),
    token: str = Depends(require_token),
) -> dict:
    """Reconcile local recordings with the remote store.

    Returns:
        dict: Per-item outcome of the run.
    """
    try:
        report = await engine.run(token)
    except SyncFailure as e:
        logger.error(f"Sync failed: {e}")
        # Flags confirmed before the failure still count
        await library.load()
        status = 401 if e.kind == "auth" else 502
        detail = {"error": f"Sync failed: {e}"}
        if e.report is not None:
            detail["report"] = e.report.as_dict()
        raise HTTPException(status_code=status, detail=detail)
    await library.load()
    return {"status": "ok", **report.as_dict()}


@router.get("/settings", response_model=CaptureSettings)
async def get_capture_settings(request: Request) -> CaptureSettings:
    recorder = request.app.state.recorder
    return recorder.settings if recorder else request.app.state.capture_settings


@router.put("/settings", response_model=CaptureSettings)
async def update_capture_settings(
    settings: CaptureSettings, recorder: ScreenRecorder = Depends(get_recorder)
) -> CaptureSettings:
    try:
        recorder.update_settings(settings)
    except RecorderBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    return recorder.settings


@router.get("/capture", response_model=CaptureStatus)
async def get_capture(recorder: ScreenRecorder = Depends(get_recorder)) -> CaptureStatus:
    return _status(recorder)


@router.post("/capture/start", response_model=CaptureStatus)
async def start_capture(recorder: ScreenRecorder = Depends(get_recorder)) -> CaptureStatus:
    try:
        started = await recorder.start()
    except CaptureError as e:
        raise _capture_http_error(e)
    if not started:
        raise HTTPException(status_code=409, detail=f"Recorder is {recorder.state.value}")
    return _status(recorder)


@router.post("/capture/pause", response_model=CaptureStatus)
async def toggle_pause(recorder: ScreenRecorder = Depends(get_recorder)) -> CaptureStatus:
    recorder.toggle_pause()
    return _status(recorder)


@router.post("/capture/stop")
async def stop_capture(recorder: ScreenRecorder = Depends(get_recorder)) -> dict:
    artifact = await recorder.stop()
    if artifact is None:
        return {"status": "idle", "recording": None}
    return {"status": "idle", "recording": to_view(artifact).model_dump(mode="json")}


@router.post("/capture/webcam", response_model=CaptureStatus)
async def toggle_webcam(
    toggle: WebcamToggle, recorder: ScreenRecorder = Depends(get_recorder)
) -> CaptureStatus:
    await recorder.set_webcam(toggle.enabled)
    return _status(recorder)


async def _run_command(recorder: ScreenRecorder, command: ClientCommand):
    if command.action == "start":
        try:
            await recorder.start()
        except CaptureError as e:
            # Already published to subscribers as a notice
            logger.info(f"Start command failed: {e}")
    elif command.action == "pause":
        recorder.toggle_pause()
    elif command.action == "stop":
        await recorder.stop()
    elif command.action == "abort":
        await recorder.abort()
    elif command.action == "webcam":
        await recorder.set_webcam(command.enabled)


@router.websocket("/ws/events")
async def events_websocket(websocket: WebSocket):
    """Stream recorder events and accept recorder commands.

    Args:
        websocket (WebSocket): The WebSocket connection.
    """
    await websocket.accept()
    recorder: Optional[ScreenRecorder] = websocket.app.state.recorder
    if recorder is None:
        logger.warning("Event socket opened without capture devices")
        await websocket.close(code=4003)
        return

    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = recorder.subscribe(queue.put_nowait)
    commands: List[asyncio.Task] = []

    async def pump():
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump(mode="json"))

    sender = asyncio.create_task(pump())
    await websocket.send_json({"type": "hello", **_status(recorder).model_dump(mode="json")})
    try:
        while True:
            text = await websocket.receive_text()
            try:
                command = ClientCommand(**json.loads(text))
            except (ValueError, ValidationError) as e:
                logger.error(f"Error processing command: {e}")
                continue
            # Commands run alongside the socket so a countdown does not block reads
            commands.append(asyncio.create_task(_run_command(recorder, command)))
    except WebSocketDisconnect:
        logger.info("Event socket disconnected")
    finally:
        unsubscribe()
        sender.cancel()
        for task in commands:
            if not task.done():
                task.cancel()

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from recoda.api import endpoints
from recoda.core.config import Settings, get_settings
from recoda.core.handles import HandleRegistry
from recoda.core.logger import get_logger
from recoda.core.media import EncoderFactory, MediaDevices
from recoda.db.base import make_engine, make_session_factory
from recoda.schemas.settings import CaptureSettings
from recoda.services.library import RecordingLibrary
from recoda.services.recorder import ScreenRecorder
from recoda.services.remote import RemoteClient
from recoda.services.store import ArtifactStore
from recoda.services.sync import SyncEngine

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    devices: Optional[MediaDevices] = None,
    encoders: Optional[EncoderFactory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    **recorder_options,
) -> FastAPI:
    """Build the application and its context objects.

    Capture endpoints need a media platform (``devices`` and ``encoders``);
    without one the library and sync endpoints still work.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = make_engine(settings.database_url)
        handles = HandleRegistry()
        store = ArtifactStore(make_session_factory(engine), handles)
        library = RecordingLibrary(store, handles, Path(settings.exports_dir))
        await library.load()

        http = http_client or httpx.AsyncClient(timeout=settings.http_timeout)
        remote = RemoteClient(settings.remote_url, http)

        recorder = None
        if devices is not None and encoders is not None:
            recorder = ScreenRecorder(devices, encoders, library, **recorder_options)

        app.state.settings = settings
        app.state.capture_settings = CaptureSettings()
        app.state.store = store
        app.state.library = library
        app.state.remote = remote
        app.state.sync_engine = SyncEngine(
            store, remote, continue_on_error=settings.sync_continue_on_error
        )
        app.state.recorder = recorder
        logger.info(f"Loaded {len(library)} recording(s)")
        try:
            yield
        finally:
            if recorder is not None:
                await recorder.abort()
                await recorder.stop()
            library.close()
            if http_client is None:
                await http.aclose()
            engine.dispose()

    app = FastAPI(title="Recoda Recording Server", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(endpoints.router)

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("recoda.main:app", host="0.0.0.0", port=8000, reload=True)

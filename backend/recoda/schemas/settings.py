from typing import Literal

from pydantic import BaseModel


class CaptureSettings(BaseModel):
    audio_source: Literal["none", "mic", "system", "both"] = "none"
    quality: Literal["720", "1080"] = "1080"
    output_format: Literal["auto", "mp4", "webm"] = "auto"
    webcam_enabled: bool = False


class CaptureStatus(BaseModel):
    state: str
    elapsed: int
    mime: str = ""
    settings: CaptureSettings


class WebcamToggle(BaseModel):
    enabled: bool

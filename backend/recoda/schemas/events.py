from typing import Literal, Optional

from pydantic import BaseModel


class StateChanged(BaseModel):
    type: Literal["state"] = "state"
    state: str
    prev: str


class CountdownTick(BaseModel):
    type: Literal["countdown"] = "countdown"
    remaining: int


class TimerTick(BaseModel):
    type: Literal["timer"] = "timer"
    elapsed: int
    display: str


class Notice(BaseModel):
    type: Literal["notice"] = "notice"
    level: Literal["info", "success", "warning", "error"] = "info"
    message: str


class LevelSample(BaseModel):
    type: Literal["meter"] = "meter"
    mic: Optional[float] = None
    system: Optional[float] = None
    mic_db: Optional[int] = None
    system_db: Optional[int] = None


class RecordingReady(BaseModel):
    type: Literal["recording_ready"] = "recording_ready"
    id: Optional[int] = None
    filename: str
    duration: int
    url: Optional[str] = None
    saved: bool = True


class ClientCommand(BaseModel):
    action: Literal["start", "pause", "stop", "abort", "webcam"]
    enabled: bool = False

import os
from pathlib import Path

APP_DIR = Path(os.getenv("RECODA_HOME", Path.home() / ".recoda"))

# Capture quality tiers: ideal display size and encoder bitrate
QUALITY_TIERS = {
    "720": {"width": 1280, "height": 720, "bitrate": 2_500_000},
    "1080": {"width": 1920, "height": 1080, "bitrate": 5_000_000},
}
DEFAULT_QUALITY = "1080"

# Encoder MIME candidates, most preferred first
MP4_MIME_TYPES = (
    "video/mp4;codecs=avc1,opus",
    "video/mp4;codecs=avc1",
    "video/mp4",
)
WEBM_MIME_TYPES = (
    "video/webm;codecs=vp9,opus",
    "video/webm;codecs=vp8,opus",
    "video/webm",
)
FALLBACK_MIME = "video/webm"

AUDIO_SOURCES = ("none", "mic", "system", "both")
OUTPUT_FORMATS = ("auto", "mp4", "webm")

COUNTDOWN_STEPS = 3
COUNTDOWN_INTERVAL = 1.0
TIMER_INTERVAL = 1.0

# Level metering
METER_INTERVAL = 1 / 30
ANALYSER_FFT_SIZE = 256
ANALYSER_SMOOTHING = 0.75
ANALYSER_MIN_DB = -100.0
ANALYSER_MAX_DB = -30.0
GRAPH_SAMPLE_RATE = 48000

WEBCAM_CONSTRAINTS = {"width": 320, "height": 240, "facingMode": "user"}

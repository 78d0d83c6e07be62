from typing import Optional


class RecodaError(Exception):
    """Base class for every error raised by recoda."""


class CaptureError(RecodaError):
    """A capture session could not be started."""


class PermissionDenied(CaptureError):
    """The user declined a capture or device prompt."""


class CaptureAborted(CaptureError):
    """The user cancelled the capture prompt or the session was aborted."""


class NoSupportedFormat(CaptureError):
    """No encodable container/codec combination is available."""


class DeviceUnavailable(RecodaError):
    """An optional device (microphone, webcam) could not be acquired."""


class PersistenceFailure(RecodaError):
    """A local store write failed."""


class NotFound(RecodaError):
    """The referenced artifact does not exist."""


class SyncFailure(RecodaError):
    """A reconciliation run failed.

    ``kind`` is one of ``network``, ``auth``, ``server`` or ``transfer``.
    ``report`` holds the per-item outcome of the run when one was produced.
    """

    def __init__(self, message: str, kind: str = "server", report: Optional[object] = None):
        super().__init__(message)
        self.kind = kind
        self.report = report


class ExportError(RecodaError):
    """The requested download format is not the artifact's native format."""


class RecorderBusy(RecodaError):
    """The operation is only allowed while the recorder is idle."""

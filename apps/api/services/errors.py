"""Domain errors raised by the media acquisition pipeline."""

from __future__ import annotations

from typing import List, Optional


class MediaPipelineError(RuntimeError):
    """Base class for pipeline failures."""


class InvalidSourceUrl(MediaPipelineError, ValueError):
    """URL does not identify a supported external video."""


class ExtractionFailed(MediaPipelineError):
    """Every extraction strategy failed for a job."""

    def __init__(self, last_error: str, attempts: Optional[List[str]] = None):
        self.last_error = last_error
        self.attempts = list(attempts or [])
        super().__init__(f"All download methods failed. Last error: {last_error}")


class CredentialRefreshFailed(MediaPipelineError):
    """Automated login could not produce a fresh cookie file."""


class LockTimeout(CredentialRefreshFailed):
    """Timed out waiting for another process to finish refreshing credentials."""


class UploadFailed(MediaPipelineError):
    """Object storage rejected or could not receive the file."""


class ProxyOverloaded(MediaPipelineError):
    """Streaming proxy is at its connection cap."""


class InvalidStatusTransition(MediaPipelineError):
    """Requested download status change is not allowed from the current state."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move download status from {current} to {target}")

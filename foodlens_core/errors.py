"""Exception types raised by the scan pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base error for every pipeline component."""

    def __init__(
        self,
        message: str,
        component: str | None = None,
        original_error: Exception | None = None,
    ):
        self.message = message
        self.component = component
        self.original_error = original_error
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.component:
            msg += f" (component: {self.component})"
        if self.original_error:
            msg += f" [{type(self.original_error).__name__}: {self.original_error}]"
        return msg


class ImageDecodeError(PipelineError):
    """Uploaded bytes are not a decodable image."""


class DetectionError(PipelineError):
    """Detector unreachable or returned a malformed response."""


class DetectorWarmingUp(DetectionError):
    """Detector model is still loading; the call may be retried."""

    def __init__(self, message: str, estimated_wait: float | None = None, component: str | None = None):
        self.estimated_wait = estimated_wait
        super().__init__(message, component=component)


class OCRError(PipelineError):
    """Text recognition service failed for a crop."""


class CatalogError(PipelineError):
    """Catalog lookup or search failed."""


class CacheStoreError(PipelineError):
    """Key-value store behind the cache is unavailable."""

"""
Exceptions raised by the audio delivery services.

Views translate them into HTTP responses; background tasks log them.
"""


class AudioDeliveryError(Exception):
    """Base exception for all audio delivery errors."""


class TranscoderUnavailable(AudioDeliveryError):
    """Raised when no usable transcoder executable is configured."""


class ProbeFailed(AudioDeliveryError):
    """Raised when the source duration cannot be read from the transcoder output."""


class TranscoderError(AudioDeliveryError):
    """Raised when a transcoder run times out or exits with a non-zero status."""

    def __init__(self, message, result=None):
        super().__init__(message)
        self.result = result


class WriteFailed(AudioDeliveryError):
    """Raised when a demo file cannot be produced on disk."""


class TrackNotFound(AudioDeliveryError):
    """Raised when the product or the requested track does not exist."""


class SourceUnavailable(AudioDeliveryError):
    """Raised when a remote source cannot be fetched into the local cache."""


class RangeNotSatisfiable(AudioDeliveryError):
    """Raised when a Range header points outside the entity."""

    def __init__(self, total):
        super().__init__(f"Requested range not satisfiable (entity is {total} bytes)")
        self.total = total


class TranscoderNotConfigured(AudioDeliveryError):
    """Raised when a format bundle run cannot start because no transcoder exists."""


class PerFileConversionFailed(AudioDeliveryError):
    """Raised when one asset cannot be converted into one target format."""


class ArchiveCreationFailed(AudioDeliveryError):
    """Raised when a format archive cannot be written."""

"""
Exception types raised by yolo_post.

Per-frame problems (`InvalidImage`, `InferenceFailure`) are recoverable: the
caller skips the frame. `CatalogMismatch` is a configuration error and puts a
`DetectorSession` into a failed state until it is re-initialized.
"""


class YoloPostError(Exception):
    """Base class for all yolo_post errors."""


class InvalidImage(YoloPostError, ValueError):
    """Image has zero/negative dimensions or an unsupported channel layout."""


class InferenceFailure(YoloPostError, RuntimeError):
    """The inference engine reported an error for this frame."""


class CatalogMismatch(YoloPostError, ValueError):
    """Model class count and label catalog disagree."""


class SessionNotReady(YoloPostError, RuntimeError):
    """The session is closed or failed initialization."""

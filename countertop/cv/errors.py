"""Exceptions raised by the texture replacement pipeline."""


class TextureReplacementError(RuntimeError):
    """Base class for pipeline failures."""


class InvalidImageError(TextureReplacementError, ValueError):
    """Image bytes or arrays that cannot be processed (undecodable, empty, wrong shape)."""


class SegmentationUnavailable(TextureReplacementError):
    """A segmentation strategy could not produce a mask; the next strategy should be tried."""

    def __init__(self, message: str, strategy: str = None):
        self.strategy = strategy
        if strategy:
            message = f"{strategy}: {message}"
        super().__init__(message)

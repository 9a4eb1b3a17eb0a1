"""Media inspection adapters."""

from .probe import FfprobeMediaProbe, MediaInfo, MediaProbe

__all__ = ["FfprobeMediaProbe", "MediaInfo", "MediaProbe"]

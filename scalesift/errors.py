from __future__ import annotations


class SiftError(Exception):
    """Base class for every error raised by scalesift."""


class InvalidInputError(SiftError, ValueError):
    """The caller handed over something the pipeline cannot work on.

    Raised for images that are not 2-D, empty, non-finite or too small for the
    requested octave count, for malformed pyramids, and for empty or
    inconsistent descriptor sets given to the matcher.
    """


class DetectionCancelled(SiftError):
    """A cancellation flag was set while detection or matching was running."""

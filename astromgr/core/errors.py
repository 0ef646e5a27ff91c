"""Exception types shared across the manager."""

# Builtin dependencies
from __future__ import annotations


class AstroError(Exception):
    """Base class for every manager error."""


class SegmentError(AstroError, OSError):
    """A shared-memory segment could not be created, opened or released."""


class SegmentAccessError(SegmentError):
    """A handle tried to write a field owned by another process role."""


class ModelFormatError(AstroError, ValueError):
    """A model file is truncated, corrupt or of an unknown version."""


class PopulationError(AstroError):
    """A population directory could not be loaded or created."""


class GenerationError(AstroError):
    """The end-of-generation step (report, breeding) failed; the run stops."""


class SchedulerError(AstroError):
    """The scheduler was asked to do something its state does not allow."""

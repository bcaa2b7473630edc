from __future__ import annotations


class ThumbnailPipelineError(RuntimeError):
    """Base class for errors that abort thumbnail selection."""


class VideoUnavailable(ThumbnailPipelineError):
    """The video could not be opened or its duration could not be determined."""


class NoUsableFrames(ThumbnailPipelineError):
    """Every sampled timestamp failed to seek or decode."""


class NoCandidatesError(ThumbnailPipelineError):
    """Selection was asked to rank an empty candidate list."""


class PipelineCancelled(ThumbnailPipelineError):
    """The request was cancelled or ran past its deadline before selection."""


class StorageError(ThumbnailPipelineError):
    """Persisting the winning thumbnail failed after bounded retries."""

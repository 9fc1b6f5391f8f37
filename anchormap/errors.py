"""Exception and warning taxonomy for anchormap.

Loading errors (`MissingFileError`, `FormatError`, `SchemaError`) abort a run
before any computation. Anchor-finding precondition errors are fatal to that
integration call only; the two input datasets stay usable. `NoAnchorsError` is
fatal to one transfer call. `UnanchoredSampleWarning` is non-fatal and is also
attached to transfer results.
"""

from __future__ import annotations


class AnchorMapError(Exception):
    """Base class for all anchormap errors."""


class MissingFileError(AnchorMapError, FileNotFoundError):
    """A required input file or directory could not be located."""


class FormatError(AnchorMapError, ValueError):
    """Matrix dimensions disagree with the identifier lists, or ids repeat."""


class SchemaError(AnchorMapError, ValueError):
    """Counts, coordinates and metadata do not index the same samples."""


class IncompatibleFeatureSpaceError(AnchorMapError, ValueError):
    """Reference and query share no features."""


class InsufficientSamplesError(AnchorMapError, ValueError):
    """A dataset has fewer samples than the neighbourhood size requested."""


class NoAnchorsError(AnchorMapError, ValueError):
    """Transfer was attempted with an empty AnchorSet."""


class UnanchoredSampleWarning(UserWarning):
    """Some query samples received no prediction because no anchor touches them."""

    def __init__(self, message: str, sample_ids: tuple[str, ...] = ()):
        super().__init__(message)
        self.sample_ids = tuple(sample_ids)

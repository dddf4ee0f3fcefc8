"""
Error taxonomy for footprint metric calculations.

Configuration problems (unknown names, mismatched coordinate systems, empty
zone sets) are raised before any geometry is touched. Geometry problems are
raised per footprint set, and tiled runs wrap anything raised inside a tile
in a TileProcessingError carrying the tile coordinates.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple


class FootprintMetricsError(ValueError):
    """Base class for all package errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self._init_args: Tuple[Any, ...] = (message,)

    def __reduce__(self):
        # Rebuild from the constructor arguments so errors survive a trip
        # through a process pool.
        return type(self), self._init_args

    def to_error_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly description of the error."""
        return {
            'error': type(self).__name__,
            'message': self.message,
        }


class ConfigurationError(FootprintMetricsError):
    """An option value is not recognised or is inconsistent."""


class UnknownMetricError(ConfigurationError):
    """A metric name is not in the registry."""

    def __init__(self, name: str):
        super().__init__(f"Unknown metric '{name}'")
        self.name = name
        self._init_args = (name,)

    def to_error_dict(self) -> Dict[str, Any]:
        d = super().to_error_dict()
        d['name'] = self.name
        return d


class UnknownReducerError(ConfigurationError):
    """A summary function name is not supported."""

    def __init__(self, name: str):
        super().__init__(f"Unknown summary function '{name}'")
        self.name = name
        self._init_args = (name,)

    def to_error_dict(self) -> Dict[str, Any]:
        d = super().to_error_dict()
        d['name'] = self.name
        return d


class IncompatibleReducerError(ConfigurationError):
    """A summary function was requested for a metric it cannot summarise."""

    def __init__(self, metric: str, reducer: str):
        super().__init__(
            f"Summary function '{reducer}' cannot be applied to metric '{metric}'"
        )
        self.metric = metric
        self.reducer = reducer
        self._init_args = (metric, reducer)

    def to_error_dict(self) -> Dict[str, Any]:
        d = super().to_error_dict()
        d.update({'metric': self.metric, 'reducer': self.reducer})
        return d


class CRSMismatchError(ConfigurationError):
    """Two inputs use different coordinate reference systems."""

    def __init__(self, left: Any, right: Any):
        super().__init__(f"Coordinate reference systems differ: {left} vs {right}")
        self.left = str(left)
        self.right = str(right)
        self._init_args = (self.left, self.right)

    def to_error_dict(self) -> Dict[str, Any]:
        d = super().to_error_dict()
        d.update({'left': self.left, 'right': self.right})
        return d


class EmptyZoneSetError(ConfigurationError):
    """No zones were supplied."""

    def __init__(self, message: str = "Zone set is empty"):
        super().__init__(message)


class InvalidGeometryError(FootprintMetricsError):
    """One or more footprints are empty or invalid."""

    def __init__(self, indices: Sequence[int], message: Optional[str] = None):
        self.indices: List[int] = [int(i) for i in indices]
        if message is None:
            preview = ', '.join(str(i) for i in self.indices[:10])
            if len(self.indices) > 10:
                preview += ', ...'
            message = (
                f"{len(self.indices)} footprint(s) have empty or invalid "
                f"geometry: [{preview}]"
            )
        super().__init__(message)
        self._init_args = (self.indices, message)

    def to_error_dict(self) -> Dict[str, Any]:
        d = super().to_error_dict()
        d['indices'] = self.indices
        return d


class TileProcessingError(FootprintMetricsError):
    """Wraps an error raised while processing one tile."""

    def __init__(self, row: int, col: int, cause: BaseException):
        super().__init__(f"Tile ({row}, {col}) failed: {cause}")
        self.row = row
        self.col = col
        self.cause = cause
        self._init_args = (row, col, cause)

    def to_error_dict(self) -> Dict[str, Any]:
        d = super().to_error_dict()
        d.update({
            'row': self.row,
            'col': self.col,
            'cause': type(self.cause).__name__,
        })
        return d

"""
Error taxonomy for the LST downscaling pipeline.

Configuration errors abort a run before any computation starts.
Data-sparsity errors skip a single year. Numerical degeneracy and
resource exhaustion are kept distinct so callers can react differently.
"""


class LSTDownscalingError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(LSTDownscalingError):
    """Invalid configuration or malformed input schema."""


class DataSparsityError(LSTDownscalingError):
    """Not enough data to process a year. The year is skipped."""


class NoScenesError(DataSparsityError):
    """No scene survived filtering."""


class NoDryDaysError(DataSparsityError):
    """The precipitation record yielded zero dry days."""


class NoTrainingDataError(DataSparsityError):
    """The coarse target raster has no valid pixel."""


class EmptySampleError(DataSparsityError):
    """Sampling or partitioning produced an empty set of rows."""


class DegenerateTargetError(LSTDownscalingError):
    """Target values have zero variance, so R² is undefined."""


class ResourceExhaustedError(LSTDownscalingError):
    """
    An operation exceeded its resource limits.

    Retry with smaller parameters (sample count, subsample stride,
    prediction chunk size or study area).
    """

"""
Exception hierarchy for the clustering and outlier engine.

Parameter problems are raised before any pairwise work starts; per-file
problems are absorbed by the detectors and never surface here.
"""


class ClusteringError(Exception):
    """Base exception for all clustering errors."""
    pass


class InsufficientFiles(ClusteringError):
    """Raised when too few qualifying files are available to cluster."""

    def __init__(self, have: int, need: int) -> None:
        self.have = have
        self.need = need
        super().__init__(f"Insufficient files for clustering: {have} < {need}")


class InvalidSimilarity(ClusteringError):
    """Raised when a similarity threshold falls outside 50-100."""

    def __init__(self, value) -> None:
        self.value = value
        super().__init__(f"Invalid similarity threshold: {value} (must be 50-100)")


class DbscanError(ClusteringError):
    """Reserved for clustering backends that can fail internally."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"DBSCAN failed: {reason}")


class HashError(ClusteringError):
    """Raised when two fuzzy hashes cannot be compared."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Hash computation failed: {reason}")

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import ppdeep

from .errors import HashError

logger = logging.getLogger(__name__)

MAX_SIMILARITY = 100
LSH_CHUNK_PREFIX = 8


def compute_fuzzy_hash(path: Path | str) -> str:
    """Return the ssdeep-format fuzzy hash of a file's contents."""
    try:
        return ppdeep.hash_from_file(str(path))
    except (OSError, ValueError) as exc:
        raise HashError(f"{path}: {exc}") from exc


def parse_fuzzy_hash(value: str) -> Tuple[int, str, str]:
    """Split ``<blocksize>:<chunk1>:<chunk2>`` into its fields."""
    parts = value.split(":")
    if len(parts) < 3:
        raise HashError(f"malformed fuzzy hash {value!r}")
    try:
        block_size = int(parts[0])
    except ValueError as exc:
        raise HashError(f"malformed block size in {value!r}") from exc
    return block_size, parts[1], parts[2]


def compare_hashes(left: str, right: str) -> int:
    try:
        score = ppdeep.compare(left, right)
    except (ValueError, IndexError, TypeError) as exc:
        raise HashError(str(exc)) from exc
    if score is None or not 0 <= int(score) <= MAX_SIMILARITY:
        raise HashError(f"similarity out of range: {score!r}")
    return int(score)


def similarity_safe(left: Optional[str], right: Optional[str]) -> int:
    """Compare two optional hashes, scoring 0 when either side is unusable."""
    if not left or not right:
        return 0
    try:
        return compare_hashes(left, right)
    except HashError as exc:
        logger.debug("Treating pair as dissimilar: %s", exc)
        return 0


def similarity_to_distance(similarity: float) -> float:
    return float(MAX_SIMILARITY) - float(similarity)


def lsh_bucket_key(value: Optional[str]) -> Optional[Tuple[int, str]]:
    """Bucket key from the block size and the head of the first chunk."""
    if not value:
        return None
    try:
        block_size, chunk, _ = parse_fuzzy_hash(value)
    except HashError:
        return None
    return block_size, chunk[:LSH_CHUNK_PREFIX]

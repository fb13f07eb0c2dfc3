"""
Vector math primitives shared by every store.

Embeddings travel through the engine as float32 numpy arrays and are
persisted as raw little-endian float32 buffers.
"""

from typing import Optional, Sequence, Union

import numpy as np

from .errors import DimensionMismatch

MS_PER_DAY = 86_400_000

VectorLike = Union[np.ndarray, Sequence[float]]


def as_vector(values: VectorLike) -> np.ndarray:
    """Coerce a sequence of floats into a 1-D float32 array."""
    return np.asarray(values, dtype=np.float32).reshape(-1)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """
    Cosine similarity between two vectors, in [-1, 1].

    Returns exactly 0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatch: If the vectors differ in length.
    """
    va = as_vector(a)
    vb = as_vector(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(va.shape[0], vb.shape[0])

    # Accumulate in float64 so long float32 vectors don't lose precision
    va = va.astype(np.float64)
    vb = vb.astype(np.float64)
    magnitude = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if magnitude == 0:
        return 0.0

    similarity = float(np.dot(va, vb)) / magnitude
    return max(-1.0, min(1.0, similarity))


def time_decay_score(similarity: float, age_days: float, decay_factor: float) -> float:
    """
    Down-weight a similarity by age: similarity * decay_factor ** age_days.

    A decay_factor of 1 disables decay.
    """
    if not 0 < decay_factor <= 1:
        raise ValueError(f"decay_factor must be in (0, 1], got {decay_factor}")
    return similarity * decay_factor ** age_days


def age_in_days(created_at_ms: int, now_ms: int) -> float:
    """Age of a timestamp in fractional days."""
    return (now_ms - created_at_ms) / MS_PER_DAY


def serialize_vector(vector: VectorLike) -> bytes:
    """Serialize a vector to a float32 buffer for storage."""
    return as_vector(vector).astype("<f4").tobytes()


def deserialize_vector(blob: Optional[bytes]) -> Optional[np.ndarray]:
    """Restore a vector from a stored float32 buffer (None stays None)."""
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(np.float32)

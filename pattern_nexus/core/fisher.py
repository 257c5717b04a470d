"""
Fisher Information Matrix (diagonal) for EWC++.

Each dimension of the context embedding carries an importance value:
- High importance = changing this dimension would harm prediction
- Low importance = safe to overwrite with new patterns

Importance is the running mean of squared gradients, so values stay on
the same scale as the store grows. Decay shrinks the running sum but not
the update count, which keeps the estimate stable right after a decay.
"""

import struct
import threading
from typing import Sequence, Union

import numpy as np

from .errors import PatternValidationError

Vector = Union[np.ndarray, Sequence[float]]

# uint32 update_count, then float32[D] importance, then float32[D] running_sum
_HEADER = struct.Struct("<I")
_FLOAT = np.dtype("<f4")


class FisherInformationMatrix:
    """
    Online diagonal Fisher Information estimate.

    Instances are owned by a PatternStore. All mutators take an internal
    lock; readers get copies, never views of the live buffers.

    Example:
        fisher = FisherInformationMatrix(384)
        fisher.update(new_embedding - mean_embedding)
        fisher.decay(0.95)
        weights = 1.0 + fisher.get_importance_vector()
    """

    def __init__(self, dimensions: int = 384):
        if dimensions < 1:
            raise PatternValidationError(f"dimensions must be >= 1, got {dimensions}")
        self.dimensions = dimensions
        self._importance = np.zeros(dimensions, dtype=np.float64)
        self._running_sum = np.zeros(dimensions, dtype=np.float64)
        self._update_count = 0
        self._lock = threading.RLock()

    @property
    def update_count(self) -> int:
        return self._update_count

    @property
    def size_bytes(self) -> int:
        """Size of the serialized state."""
        return _HEADER.size + 2 * self.dimensions * _FLOAT.itemsize

    def get_importance(self, dimension_index: int) -> float:
        if not 0 <= dimension_index < self.dimensions:
            return 0.0
        return float(self._importance[dimension_index])

    def update(self, gradient: Vector) -> None:
        """Fold one squared gradient into the running mean."""
        grad = self._as_vector(gradient)
        with self._lock:
            self._running_sum += grad * grad
            self._update_count += 1
            self._importance = self._running_sum / self._update_count

    def decay(self, decay_factor: float) -> None:
        """Scale the running sum by decay_factor in (0, 1]."""
        if not 0.0 < decay_factor <= 1.0:
            raise PatternValidationError(
                f"decay_factor must be in (0, 1], got {decay_factor}"
            )
        with self._lock:
            self._running_sum *= decay_factor
            self._importance = self._running_sum / max(1, self._update_count)

    def get_importance_vector(self) -> np.ndarray:
        """Copy of the importance diagonal."""
        with self._lock:
            return self._importance.copy()

    def get_average_importance(self) -> float:
        with self._lock:
            return float(self._importance.mean())

    def serialize(self) -> bytes:
        with self._lock:
            return b"".join((
                _HEADER.pack(self._update_count),
                self._importance.astype(_FLOAT).tobytes(),
                self._running_sum.astype(_FLOAT).tobytes(),
            ))

    def deserialize(self, buffer: bytes) -> None:
        """Replace the state with a serialized one of the same dimensions."""
        expected = self.size_bytes
        if len(buffer) < expected:
            raise PatternValidationError(
                f"Invalid Fisher matrix buffer: expected {expected} bytes, got {len(buffer)}"
            )

        (update_count,) = _HEADER.unpack_from(buffer, 0)
        importance = np.frombuffer(
            buffer, dtype=_FLOAT, count=self.dimensions, offset=_HEADER.size
        )
        running_sum = np.frombuffer(
            buffer,
            dtype=_FLOAT,
            count=self.dimensions,
            offset=_HEADER.size + self.dimensions * _FLOAT.itemsize,
        )

        with self._lock:
            self._update_count = int(update_count)
            self._importance = importance.astype(np.float64)
            self._running_sum = running_sum.astype(np.float64)

    def reset(self) -> None:
        with self._lock:
            self._importance = np.zeros(self.dimensions, dtype=np.float64)
            self._running_sum = np.zeros(self.dimensions, dtype=np.float64)
            self._update_count = 0

    def copy(self) -> "FisherInformationMatrix":
        """Independent copy, e.g. to restore after a failed consolidation."""
        clone = FisherInformationMatrix(self.dimensions)
        with self._lock:
            clone._importance = self._importance.copy()
            clone._running_sum = self._running_sum.copy()
            clone._update_count = self._update_count
        return clone

    def restore(self, other: "FisherInformationMatrix") -> None:
        """Take over the state of another matrix of the same dimensions."""
        if other.dimensions != self.dimensions:
            raise PatternValidationError(
                f"Cannot restore {other.dimensions}-dim state into {self.dimensions} dims"
            )
        with self._lock:
            self._importance = other._importance.copy()
            self._running_sum = other._running_sum.copy()
            self._update_count = other._update_count

    def _as_vector(self, gradient: Vector) -> np.ndarray:
        grad = np.asarray(gradient, dtype=np.float64)
        if grad.shape != (self.dimensions,):
            raise PatternValidationError(
                f"Gradient must have shape ({self.dimensions},), got {grad.shape}"
            )
        return grad

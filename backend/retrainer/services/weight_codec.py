"""
Weight serialization.

Converts a model's parameter tensors to JSON-safe flat blobs and back.
"""

import logging
from typing import Any, Sequence

import numpy as np

from retrainer.core.clock import now_ms
from retrainer.schemas.asset import StoredWeights, WeightBlob

logger = logging.getLogger(__name__)


class WeightCodecError(ValueError):
    """Raised when stored weights cannot be turned back into tensors."""
    pass


def encode_weights(tensors: Sequence[Any]) -> StoredWeights:
    """
    Flatten an ordered list of tensors.

    Args:
        tensors: Array-likes as returned by ``ModelHandle.get_weights()``.

    Returns:
        StoredWeights with one WeightBlob per tensor, in order.

    Raises:
        WeightCodecError: If a tensor holds NaN or infinite values, which
            JSON cannot represent.
    """
    blobs: list[WeightBlob] = []
    total_params = 0
    for index, tensor in enumerate(tensors):
        array = np.asarray(tensor)
        if np.issubdtype(array.dtype, np.number) and not np.all(np.isfinite(array)):
            raise WeightCodecError(f"Tensor {index} contains NaN or infinite values")
        blobs.append(
            WeightBlob(
                data=array.ravel().tolist(),
                shape=list(array.shape),
                dtype=str(array.dtype),
                index=index,
            )
        )
        total_params += int(array.size)

    return StoredWeights(
        data=blobs,
        count=len(blobs),
        total_params=total_params,
        shape=[blob.shape for blob in blobs],
        dtype=blobs[0].dtype if blobs else "float32",
        saved_at=now_ms(),
    )


def decode_weights(weights: StoredWeights) -> list[np.ndarray]:
    """
    Rebuild tensors from stored blobs.

    Raises:
        WeightCodecError: If the blob list is incomplete or a blob's data
            does not fill its recorded shape.
    """
    if len(weights.data) != weights.count:
        raise WeightCodecError(
            f"Expected {weights.count} tensors, found {len(weights.data)}"
        )

    arrays = []
    for blob in sorted(weights.data, key=lambda b: b.index):
        expected = int(np.prod(blob.shape)) if blob.shape else 1
        if len(blob.data) != expected:
            raise WeightCodecError(
                f"Tensor {blob.index} has {len(blob.data)} values, shape {blob.shape} needs {expected}"
            )
        arrays.append(np.asarray(blob.data, dtype=np.dtype(blob.dtype)).reshape(blob.shape))
    return arrays

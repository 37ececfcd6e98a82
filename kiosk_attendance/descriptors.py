"""
Face descriptor transport between the local store and the JSON wire format.

JSON has no typed float vector, so descriptors cross the sync boundary as
plain arrays of numbers. Older payloads carry each descriptor as an object
with numeric keys ({"0": 0.12, "1": -0.03, ...}); hydration accepts both.
"""
from __future__ import annotations

import json
from typing import Any, Iterable, List, Sequence, Tuple

import numpy as np

DESCRIPTOR_CODEC_VERSION = 1
DESCRIPTOR_DTYPE = np.float32


def as_descriptor(values: Any) -> np.ndarray:
    """Coerce one descriptor (array, list or numeric-keyed mapping) to a float32 vector."""
    if isinstance(values, dict):
        try:
            ordered = sorted(values.items(), key=lambda item: int(item[0]))
        except (TypeError, ValueError) as exc:
            raise ValueError("Descriptor object keys must be integer indexes.") from exc
        values = [value for _, value in ordered]

    try:
        vector = np.asarray(values, dtype=DESCRIPTOR_DTYPE)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Descriptor values must be numeric: {exc}") from exc

    if vector.ndim != 1 or vector.size == 0:
        raise ValueError("Descriptor must be a non-empty 1D vector.")
    if not np.all(np.isfinite(vector)):
        raise ValueError("Descriptor contains non-finite values.")
    return vector


def hydrate_descriptors(raw: Any, version: Any = None) -> List[np.ndarray]:
    """
    Rebuild float32 descriptor vectors from their JSON-transportable form.

    Args:
        raw: JSON text, a list of arrays, a list of numeric-keyed objects,
            or None.
        version: codec version announced by the sender. None is read as
            the current version.

    Returns:
        List of 1D float32 vectors, in payload order.
    """
    if version is not None:
        try:
            version = int(version)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Descriptor codec version must be an integer, got {version!r}") from exc
        if version != DESCRIPTOR_CODEC_VERSION:
            raise ValueError(
                f"Unsupported descriptor codec version {version} (this kiosk reads {DESCRIPTOR_CODEC_VERSION})"
            )

    if raw is None:
        return []
    if isinstance(raw, (str, bytes)):
        if not raw:
            return []
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Descriptor payload is not valid JSON: {exc}") from exc
        if raw is None:
            return []
    if isinstance(raw, dict):
        # A descriptor set that was itself serialised as an indexed object.
        raw = [value for _, value in sorted(raw.items(), key=lambda item: int(item[0]))]
    if isinstance(raw, np.ndarray):
        raw = list(raw) if raw.ndim > 1 else [raw]
    if not isinstance(raw, (list, tuple)):
        raise ValueError("Descriptor payload must be a list.")

    return [as_descriptor(item) for item in raw]


def encode_descriptors(descriptors: Iterable[np.ndarray]) -> List[List[float]]:
    return [[float(value) for value in np.asarray(vector, dtype=DESCRIPTOR_DTYPE)] for vector in descriptors]


def descriptor_fingerprint(descriptors: Sequence[np.ndarray]) -> str:
    """Stable serialization used to decide whether two descriptor sets differ."""
    return json.dumps(encode_descriptors(descriptors), separators=(",", ":"))


def pack_matrix(descriptors: Sequence[np.ndarray]) -> Tuple[bytes, int, int]:
    if not descriptors:
        raise ValueError("At least one descriptor is required.")
    vectors = [as_descriptor(vector) for vector in descriptors]
    dims = {vector.size for vector in vectors}
    if len(dims) != 1:
        raise ValueError("All descriptors of a profile must have the same length.")
    matrix = np.vstack(vectors).astype(DESCRIPTOR_DTYPE)
    return matrix.tobytes(), matrix.shape[0], matrix.shape[1]


def unpack_matrix(blob: bytes, count: int, dim: int) -> List[np.ndarray]:
    if not blob or count <= 0:
        return []
    matrix = np.frombuffer(blob, dtype=DESCRIPTOR_DTYPE, count=count * dim).reshape(count, dim)
    return [row.copy() for row in matrix]

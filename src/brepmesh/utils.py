from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, TYPE_CHECKING

import numpy as np

from brepmesh.config import DEFAULT_EPSILON

if TYPE_CHECKING:
    import numpy.typing as npt


def as_point(values: Iterable[float]) -> npt.NDArray[np.float64]:
    """Coerce a 2- or 3-sequence into a float64 3-vector (z defaults to 0)."""
    arr = np.asarray(list(values), dtype=np.float64)
    if arr.shape == (2,):
        arr = np.append(arr, 0.0)
    if arr.shape != (3,):
        raise ValueError(f"Expected a 2D or 3D point, got shape {arr.shape}")
    return arr


def unit(vector: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    norm = float(np.linalg.norm(vector))
    if norm <= DEFAULT_EPSILON:
        raise ValueError("Cannot normalize a zero-length vector.")
    return vector / norm


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box."""
    min: tuple[float, float, float]
    max: tuple[float, float, float]

    @classmethod
    def of_points(cls, points: npt.NDArray[np.float64]) -> BoundingBox:
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if pts.size == 0:
            return cls((0.0, 0.0, 0.0), (0.0, 0.0, 0.0))
        lo = pts.min(axis=0)
        hi = pts.max(axis=0)
        return cls(tuple(float(v) for v in lo), tuple(float(v) for v in hi))

    @property
    def diagonal(self) -> float:
        return float(np.linalg.norm(np.subtract(self.max, self.min)))


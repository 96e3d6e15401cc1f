from __future__ import annotations

import logging
import math
import threading
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

import numpy as np

from brepmesh.config import FLOAT_DTYPE
from brepmesh.errors import ToleranceConflict

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)

_NEIGHBOURS = [(i, j, k) for i in (-1, 0, 1) for j in (-1, 0, 1) for k in (-1, 0, 1)]


class NodeIndex:
    """
    Prevents duplicate nodes across a discretization run.
    Maps positions to node ids; two positions within ``tolerance`` share a node.

    Positions are hashed into cubic cells of edge ``tolerance`` so that every
    candidate lies in the 27 cells around the query. All access is serialized
    by one lock, so worker threads can create nodes concurrently.
    """
    def __init__(self, tolerance: float) -> None:
        if tolerance <= 0.0:
            raise ValueError(f"Tolerance must be positive, got {tolerance}")
        self.tolerance = tolerance
        self._cells: Dict[Tuple[int, int, int], List[int]] = {}
        self._positions: List[npt.NDArray[np.float64]] = []
        self._owners: List[int] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._positions)

    def _cell(self, p: npt.NDArray[np.float64]) -> Tuple[int, int, int]:
        return (
            math.floor(p[0] / self.tolerance),
            math.floor(p[1] / self.tolerance),
            math.floor(p[2] / self.tolerance),
        )

    def _candidates(self, p: npt.NDArray[np.float64]) -> List[int]:
        cx, cy, cz = self._cell(p)
        found = []
        for dx, dy, dz in _NEIGHBOURS:
            for node_id in self._cells.get((cx + dx, cy + dy, cz + dz), ()):
                if float(np.linalg.norm(self._positions[node_id] - p)) <= self.tolerance:
                    found.append(node_id)
        return found

    def _lookup_or_insert(self, p: npt.NDArray[np.float64], owner: int) -> Tuple[int, bool]:
        matches = self._candidates(p)
        if len(matches) > 1:
            raise ToleranceConflict(
                [self._owners[m] for m in matches] + [owner],
                self.tolerance,
                f"position {p.tolist()} matches {len(matches)} existing nodes",
            )
        if matches:
            return matches[0], False

        node_id = len(self._positions)
        self._positions.append(p)
        self._owners.append(owner)
        self._cells.setdefault(self._cell(p), []).append(node_id)
        return node_id, True

    def get_or_create(self, point: npt.NDArray[np.float64], owner: int) -> Tuple[int, bool]:
        """Node id for ``point`` and whether it was created by this call."""
        p = np.asarray(point, dtype=FLOAT_DTYPE).reshape(3)
        with self._lock:
            return self._lookup_or_insert(p, owner)

    def get_or_create_many(
        self, points: npt.NDArray[np.float64], owner: int
    ) -> Tuple[npt.NDArray[np.int64], npt.NDArray[np.bool_]]:
        """Batch version of :meth:`get_or_create`, holding the lock once."""
        pts = np.asarray(points, dtype=FLOAT_DTYPE).reshape(-1, 3)
        ids = np.empty(len(pts), dtype=np.int64)
        created = np.zeros(len(pts), dtype=bool)
        with self._lock:
            for i, p in enumerate(pts):
                ids[i], created[i] = self._lookup_or_insert(p.copy(), owner)
        return ids, created

    def find(self, point: npt.NDArray[np.float64]) -> Optional[int]:
        p = np.asarray(point, dtype=FLOAT_DTYPE).reshape(3)
        with self._lock:
            matches = self._candidates(p)
        return matches[0] if len(matches) == 1 else None

    def position(self, node_id: int) -> npt.NDArray[np.float64]:
        with self._lock:
            return self._positions[node_id]

    def owner(self, node_id: int) -> int:
        """The geometric entity that created ``node_id``."""
        with self._lock:
            return self._owners[node_id]

    def positions(self) -> npt.NDArray[np.float64]:
        with self._lock:
            if not self._positions:
                return np.empty((0, 3), dtype=FLOAT_DTYPE)
            return np.array(self._positions, dtype=FLOAT_DTYPE)

"""
Associativity
=============
Bidirectional lookup between mesh entities (nodes, elements) and the
geometric entities (by dense id) that generated or reused them.

The map owns nothing: it only stores integer ids of both sides.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from enum import StrEnum
from typing import Dict, FrozenSet, Iterable, Optional, Sequence, Set, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class MeshKind(StrEnum):
    NODE = "node"
    ELEMENT = "element"


@dataclass(frozen=True, order=True)
class MeshRef:
    kind: MeshKind
    id: int

    @staticmethod
    def node(node_id: int) -> MeshRef:
        return MeshRef(MeshKind.NODE, int(node_id))

    @staticmethod
    def element(element_id: int) -> MeshRef:
        return MeshRef(MeshKind.ELEMENT, int(element_id))


class AssociativityMap:
    """
    Frozen result of :class:`AssociativityBuilder`.

    ``primary`` is the geometric entity that created a mesh entity; the full
    set additionally holds every entity that reused it (shared boundary
    nodes, boundary-adjacent elements).
    """

    def __init__(
        self,
        node_geometry: Dict[int, Set[int]],
        element_geometry: Dict[int, Set[int]],
        node_primary: Dict[int, int],
        element_primary: Dict[int, int],
    ) -> None:
        self._node_geometry: Dict[int, FrozenSet[int]] = {k: frozenset(v) for k, v in node_geometry.items()}
        self._element_geometry: Dict[int, FrozenSet[int]] = {k: frozenset(v) for k, v in element_geometry.items()}
        self._node_primary = dict(node_primary)
        self._element_primary = dict(element_primary)

        reverse: Dict[int, Set[MeshRef]] = defaultdict(set)
        for node_id, geoms in self._node_geometry.items():
            for g in geoms:
                reverse[g].add(MeshRef.node(node_id))
        for element_id, geoms in self._element_geometry.items():
            for g in geoms:
                reverse[g].add(MeshRef.element(element_id))
        self._reverse: Dict[int, FrozenSet[MeshRef]] = {g: frozenset(refs) for g, refs in reverse.items()}

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(nodes={len(self._node_geometry)}, "
            f"elements={len(self._element_geometry)}, geometry={len(self._reverse)})"
        )

    # ------------------------------------------------------------------
    # Mesh -> geometry
    # ------------------------------------------------------------------
    def geometry_of_node(self, node_id: int) -> FrozenSet[int]:
        return self._node_geometry.get(int(node_id), frozenset())

    def geometry_of_element(self, element_id: int) -> FrozenSet[int]:
        return self._element_geometry.get(int(element_id), frozenset())

    def geometry_of(self, ref: MeshRef) -> FrozenSet[int]:
        if ref.kind == MeshKind.NODE:
            return self.geometry_of_node(ref.id)
        return self.geometry_of_element(ref.id)

    def primary_geometry_of(self, ref: MeshRef) -> Optional[int]:
        """The entity that created ``ref`` (None if unknown)."""
        if ref.kind == MeshKind.NODE:
            return self._node_primary.get(ref.id)
        return self._element_primary.get(ref.id)

    # ------------------------------------------------------------------
    # Geometry -> mesh
    # ------------------------------------------------------------------
    def mesh_entities_of(self, geometry_id: int) -> FrozenSet[MeshRef]:
        return self._reverse.get(int(geometry_id), frozenset())

    def nodes_of(self, geometry_id: int) -> Tuple[int, ...]:
        return tuple(sorted(r.id for r in self.mesh_entities_of(geometry_id) if r.kind == MeshKind.NODE))

    def elements_of(self, geometry_id: int) -> Tuple[int, ...]:
        return tuple(sorted(r.id for r in self.mesh_entities_of(geometry_id) if r.kind == MeshKind.ELEMENT))

    def elements_generated_by(self, geometry_id: int) -> Tuple[int, ...]:
        """Elements whose primary entity is ``geometry_id``."""
        g = int(geometry_id)
        return tuple(sorted(e for e, p in self._element_primary.items() if p == g))

    def geometry_ids(self) -> Tuple[int, ...]:
        return tuple(sorted(self._reverse))

    # ------------------------------------------------------------------
    # Renumbering
    # ------------------------------------------------------------------
    def renumbered(
        self,
        node_order: Optional[Sequence[int]] = None,
        element_order: Optional[Sequence[int]] = None,
    ) -> AssociativityMap:
        """Counterpart of :meth:`brepmesh.mesh.mesh.MeshModel.renumbered`."""
        def inverse(order: Optional[Sequence[int]]) -> Dict[int, int]:
            if order is None:
                return {}
            return {int(old): new for new, old in enumerate(np.asarray(order).tolist())}

        nodes = inverse(node_order)
        elems = inverse(element_order)

        def move(mapping: Dict[int, int], key: int) -> int:
            return mapping.get(key, key) if mapping else key

        return AssociativityMap(
            node_geometry={move(nodes, k): set(v) for k, v in self._node_geometry.items()},
            element_geometry={move(elems, k): set(v) for k, v in self._element_geometry.items()},
            node_primary={move(nodes, k): v for k, v in self._node_primary.items()},
            element_primary={move(elems, k): v for k, v in self._element_primary.items()},
        )

    def to_dict(self) -> Dict[str, Dict[str, list]]:
        return {
            "nodes": {str(k): sorted(v) for k, v in sorted(self._node_geometry.items())},
            "elements": {str(k): sorted(v) for k, v in sorted(self._element_geometry.items())},
            "node_primary": {str(k): v for k, v in sorted(self._node_primary.items())},
            "element_primary": {str(k): v for k, v in sorted(self._element_primary.items())},
        }


class AssociativityBuilder:
    """Collects associations during one run; safe to call from worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._node_geometry: Dict[int, Set[int]] = defaultdict(set)
        self._element_geometry: Dict[int, Set[int]] = defaultdict(set)
        self._node_primary: Dict[int, int] = {}
        self._element_primary: Dict[int, int] = {}

    def add_node(self, node_id: int, geometry_id: int, primary: bool = False) -> None:
        with self._lock:
            self._node_geometry[node_id].add(geometry_id)
            if primary:
                self._node_primary[node_id] = geometry_id
            else:
                self._node_primary.setdefault(node_id, geometry_id)

    def add_nodes(self, node_ids: Iterable[int], geometry_id: int) -> None:
        with self._lock:
            for node_id in node_ids:
                node_id = int(node_id)
                self._node_geometry[node_id].add(geometry_id)
                self._node_primary.setdefault(node_id, geometry_id)

    def add_element(self, element_id: int, geometry_id: int, primary: bool = False) -> None:
        with self._lock:
            self._element_geometry[element_id].add(geometry_id)
            if primary:
                self._element_primary[element_id] = geometry_id

    def freeze(self) -> AssociativityMap:
        with self._lock:
            return AssociativityMap(
                self._node_geometry, self._element_geometry, self._node_primary, self._element_primary
            )

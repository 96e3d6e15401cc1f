"""
Mesh Model
==========
The immutable output mesh of one discretization run: nodes with dense ids
and typed elements referring to them by id.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, TYPE_CHECKING

import numpy as np

from brepmesh.config import FLOAT_DTYPE, INDEX_DTYPE
from brepmesh.mesh.elements import Element, ElementType
from brepmesh.mesh.node import Node

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)


class MeshModel:
    def __init__(
        self,
        positions: npt.NDArray[np.float64] | Sequence[Sequence[float]],
        elements: Sequence[Element],
    ) -> None:
        """
        Args:
            positions: (n, 3) node positions; node id == row index.
            elements: elements with ids 0..m-1 in order.
        """
        pos = np.array(positions, dtype=FLOAT_DTYPE).reshape(-1, 3)
        pos.setflags(write=False)
        self._positions = pos
        self._elements: Tuple[Element, ...] = tuple(elements)

        for i, element in enumerate(self._elements):
            if element.id != i:
                raise ValueError(f"Element ids must be dense and ordered; position {i} holds id {element.id}")
            if element.nodes and (min(element.nodes) < 0 or max(element.nodes) >= len(pos)):
                raise ValueError(f"Element {element.id} references a node outside 0..{len(pos) - 1}")

        self._by_type: Dict[ElementType, Tuple[int, ...]] = {
            t: tuple(e.id for e in self._elements if e.type == t) for t in ElementType
        }

    def __repr__(self) -> str:
        counts = ", ".join(f"{len(ids)} {t.value}" for t, ids in self._by_type.items() if ids)
        return f"{self.__class__.__name__}(nodes={self.node_count()}, elements=[{counts}])"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def node_count(self) -> int:
        return len(self._positions)

    def element_count(self) -> int:
        return len(self._elements)

    @property
    def positions(self) -> npt.NDArray[np.float64]:
        """Read-only (n, 3) float64 array of node positions."""
        return self._positions

    def node(self, node_id: int) -> Node:
        if not 0 <= node_id < len(self._positions):
            raise IndexError(f"No node with id {node_id}")
        return Node(node_id, self._positions[node_id])

    def element(self, element_id: int) -> Element:
        if not 0 <= element_id < len(self._elements):
            raise IndexError(f"No element with id {element_id}")
        return self._elements[element_id]

    def nodes(self) -> Iterator[Node]:
        for i in range(len(self._positions)):
            yield Node(i, self._positions[i])

    def elements(self) -> Iterator[Element]:
        return iter(self._elements)

    def elements_of_type(self, element_type: ElementType | str) -> List[Element]:
        return [self._elements[i] for i in self._by_type[ElementType(element_type)]]

    def element_ids_of_type(self, element_type: ElementType | str) -> npt.NDArray[np.int64]:
        return np.array(self._by_type[ElementType(element_type)], dtype=INDEX_DTYPE)

    def connectivity(self, element_type: ElementType | str) -> npt.NDArray[np.int64]:
        """(m, k) int64 node ids of every element of one type, in element-id order."""
        t = ElementType(element_type)
        ids = self._by_type[t]
        if not ids:
            return np.empty((0, t.node_count), dtype=INDEX_DTYPE)
        return np.array([self._elements[i].nodes for i in ids], dtype=INDEX_DTYPE)

    def element_types(self) -> List[ElementType]:
        """Types present in the mesh, in catalog order."""
        return [t for t, ids in self._by_type.items() if ids]

    def referenced_nodes(self) -> npt.NDArray[np.int64]:
        used = {n for e in self._elements for n in e.nodes}
        return np.array(sorted(used), dtype=INDEX_DTYPE)

    # ------------------------------------------------------------------
    # Renumbering
    # ------------------------------------------------------------------
    def renumbered(
        self,
        node_order: Optional[Sequence[int]] = None,
        element_order: Optional[Sequence[int]] = None,
    ) -> MeshModel:
        """
        A copy where new node ``i`` is old node ``node_order[i]`` and new
        element ``j`` is old element ``element_order[j]``.
        """
        n_nodes = self.node_count()
        old_nodes = np.arange(n_nodes) if node_order is None else np.asarray(node_order, dtype=INDEX_DTYPE)
        old_elems = range(self.element_count()) if element_order is None else [int(i) for i in element_order]
        if sorted(old_nodes.tolist()) != list(range(n_nodes)):
            raise ValueError("node_order must be a permutation of the node ids")
        if sorted(old_elems) != list(range(self.element_count())):
            raise ValueError("element_order must be a permutation of the element ids")

        new_of_old = np.empty(n_nodes, dtype=INDEX_DTYPE)
        new_of_old[old_nodes] = np.arange(n_nodes)
        elements = [
            Element(
                id=new_id,
                type=self._elements[old].type,
                nodes=tuple(int(new_of_old[n]) for n in self._elements[old].nodes),
                collapsed=self._elements[old].collapsed,
            )
            for new_id, old in enumerate(old_elems)
        ]
        return MeshModel(self._positions[old_nodes], elements)

    def canonical_order(self, decimals: int = 9) -> Tuple[npt.NDArray[np.int64], List[int]]:
        """
        Node order (lexicographic by rounded position) and element order (by
        type, then by the sorted rounded positions of their nodes).
        """
        rounded = np.round(self._positions, decimals) + 0.0
        node_order = np.lexsort((rounded[:, 2], rounded[:, 1], rounded[:, 0])) if len(rounded) else np.empty(0, int)
        type_rank = {t: k for k, t in enumerate(ElementType)}

        def key(element: Element) -> tuple:
            corners = sorted(tuple(rounded[n]) for n in element.nodes)
            return type_rank[element.type], corners

        element_order = sorted(range(self.element_count()), key=lambda i: key(self._elements[i]))
        return node_order.astype(INDEX_DTYPE), element_order

    def canonical(self, decimals: int = 9) -> MeshModel:
        """Renumbered copy independent of the order in which entities were meshed."""
        node_order, element_order = self.canonical_order(decimals)
        return self.renumbered(node_order, element_order)

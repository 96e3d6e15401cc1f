"""
Element Catalog
===============
Element types with their node counts, reference-facet tables and the
matching meshio cell names.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Tuple, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    import numpy.typing as npt


class ElementType(StrEnum):
    POINT = "point"
    LINE = "line"
    TRIANGLE = "triangle"
    QUAD = "quad"
    TETRA = "tetra"
    HEXA = "hexa"

    @property
    def node_count(self) -> int:
        return _NODE_COUNT[self]

    @property
    def dimension(self) -> int:
        return _DIMENSION[self]

    @property
    def meshio_name(self) -> str:
        return _MESHIO_NAME[self]

    @property
    def facets(self) -> Tuple[Tuple[int, ...], ...]:
        """Local node indices of each boundary facet (sides of 2D, faces of 3D elements)."""
        return _FACETS[self]


_NODE_COUNT = {
    ElementType.POINT: 1,
    ElementType.LINE: 2,
    ElementType.TRIANGLE: 3,
    ElementType.QUAD: 4,
    ElementType.TETRA: 4,
    ElementType.HEXA: 8,
}

_DIMENSION = {
    ElementType.POINT: 0,
    ElementType.LINE: 1,
    ElementType.TRIANGLE: 2,
    ElementType.QUAD: 2,
    ElementType.TETRA: 3,
    ElementType.HEXA: 3,
}

_MESHIO_NAME = {
    ElementType.POINT: "vertex",
    ElementType.LINE: "line",
    ElementType.TRIANGLE: "triangle",
    ElementType.QUAD: "quad",
    ElementType.TETRA: "tetra",
    ElementType.HEXA: "hexahedron",
}

_FACETS = {
    ElementType.POINT: (),
    ElementType.LINE: ((0,), (1,)),
    ElementType.TRIANGLE: ((0, 1), (1, 2), (2, 0)),
    ElementType.QUAD: ((0, 1), (1, 2), (2, 3), (3, 0)),
    # Outward for positively oriented tetrahedra
    ElementType.TETRA: ((0, 2, 1), (0, 1, 3), (1, 2, 3), (0, 3, 2)),
    # VTK / meshio hexahedron ordering: bottom 0-1-2-3, top 4-5-6-7
    ElementType.HEXA: (
        (0, 3, 2, 1), (4, 5, 6, 7),
        (0, 1, 5, 4), (1, 2, 6, 5),
        (2, 3, 7, 6), (3, 0, 4, 7),
    ),
}


@dataclass(frozen=True)
class Element:
    """
    A mesh element: dense id, type tag and ordered node ids.

    Repeated node ids are only allowed on elements flagged ``collapsed``.
    """
    id: int
    type: ElementType
    nodes: Tuple[int, ...]
    collapsed: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(int(n) for n in self.nodes))
        if len(self.nodes) != self.type.node_count:
            raise ValueError(
                f"{self.type.value} element {self.id} needs {self.type.node_count} nodes, got {len(self.nodes)}"
            )
        if not self.collapsed and len(set(self.nodes)) != len(self.nodes):
            raise ValueError(f"Element {self.id} repeats a node: {self.nodes}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id}, type={self.type.value}, nodes={list(self.nodes)})"

    def facets(self) -> Tuple[Tuple[int, ...], ...]:
        """Facets as tuples of global node ids."""
        return tuple(tuple(self.nodes[i] for i in facet) for facet in self.type.facets)


def triangle_areas(points: npt.NDArray[np.float64], triangles: npt.NDArray[np.int64]) -> npt.NDArray[np.float64]:
    p = points[triangles]
    return 0.5 * np.linalg.norm(np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0]), axis=1)


def tetra_volumes(points: npt.NDArray[np.float64], tetras: npt.NDArray[np.int64]) -> npt.NDArray[np.float64]:
    """Signed volumes; positive for the orientation used by ``ElementType.TETRA.facets``."""
    p = points[tetras]
    a = p[:, 1] - p[:, 0]
    b = p[:, 2] - p[:, 0]
    c = p[:, 3] - p[:, 0]
    return np.einsum("ij,ij->i", a, np.cross(b, c)) / 6.0


# Five-tet split of a hexahedron: four corner tets plus the central one
_HEXA_TETS = np.array([[0, 1, 3, 4], [2, 3, 1, 6], [5, 4, 6, 1], [7, 6, 4, 3], [1, 3, 4, 6]])


def hexa_volumes(points: npt.NDArray[np.float64], hexas: npt.NDArray[np.int64]) -> npt.NDArray[np.float64]:
    """Signed volumes of (possibly non-planar) hexahedra in VTK node order."""
    hexas = np.asarray(hexas, dtype=np.int64).reshape(-1, 8)
    total = np.zeros(len(hexas))
    for tet in _HEXA_TETS:
        total += tetra_volumes(points, hexas[:, tet])
    return total

"""
Topological Entities
====================
The closed set of B-rep entity variants. Entities live in the arena owned by
:class:`brepmesh.model.geometry.GeometryModel` and refer to each other only by
dense integer id, never by object reference.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Hashable, Tuple, Union, TYPE_CHECKING

import numpy as np

from brepmesh.model.geometry_primitives import Curve, Surface

if TYPE_CHECKING:
    import numpy.typing as npt


class EntityKind(StrEnum):
    VERTEX = "vertex"
    EDGE = "edge"
    FACE = "face"
    SOLID = "solid"

    @property
    def dimension(self) -> int:
        return _DIMENSIONS[self]

    @staticmethod
    def of_dimension(dim: int) -> EntityKind:
        for kind, d in _DIMENSIONS.items():
            if d == dim:
                return kind
        raise ValueError(f"No entity kind of dimension {dim}")


_DIMENSIONS = {
    EntityKind.VERTEX: 0,
    EntityKind.EDGE: 1,
    EntityKind.FACE: 2,
    EntityKind.SOLID: 3,
}


@dataclass(frozen=True, eq=False)
class Vertex:
    id: int
    name: Hashable
    position: npt.NDArray[np.float64]
    edges: Tuple[int, ...] = ()

    kind = EntityKind.VERTEX

    @property
    def boundary(self) -> Tuple[int, ...]:
        return ()

    @property
    def coboundary(self) -> Tuple[int, ...]:
        return self.edges


@dataclass(frozen=True, eq=False)
class Edge:
    """
    A curve bounded by exactly two vertices.

    ``start == end`` for closed curves (full circles). ``degenerate`` edges
    have zero length and never produce elements.
    """
    id: int
    name: Hashable
    start: int
    end: int
    curve: Curve
    degenerate: bool = False
    faces: Tuple[int, ...] = ()

    kind = EntityKind.EDGE

    @property
    def vertices(self) -> Tuple[int, int]:
        return self.start, self.end

    @property
    def boundary(self) -> Tuple[int, ...]:
        if self.start == self.end:
            return (self.start,)
        return (self.start, self.end)

    @property
    def coboundary(self) -> Tuple[int, ...]:
        return self.faces


@dataclass(frozen=True)
class EdgeUse:
    """An edge traversed forward or reversed inside a face loop."""
    edge: int
    reversed: bool = False


@dataclass(frozen=True)
class Loop:
    uses: Tuple[EdgeUse, ...]

    @property
    def edges(self) -> Tuple[int, ...]:
        return tuple(use.edge for use in self.uses)


@dataclass(frozen=True, eq=False)
class Face:
    """
    A trimmed surface patch; ``loops[0]`` is the outer loop.

    ``sense`` is True when the face normal agrees with the surface normal.
    """
    id: int
    name: Hashable
    surface: Surface
    loops: Tuple[Loop, ...]
    sense: bool = True
    solids: Tuple[int, ...] = ()

    kind = EntityKind.FACE

    @property
    def edges(self) -> Tuple[int, ...]:
        seen: list[int] = []
        for loop in self.loops:
            for e in loop.edges:
                if e not in seen:
                    seen.append(e)
        return tuple(seen)

    @property
    def boundary(self) -> Tuple[int, ...]:
        return self.edges

    @property
    def coboundary(self) -> Tuple[int, ...]:
        return self.solids


@dataclass(frozen=True, eq=False)
class Solid:
    id: int
    name: Hashable
    faces: Tuple[int, ...]

    kind = EntityKind.SOLID

    @property
    def boundary(self) -> Tuple[int, ...]:
        return self.faces

    @property
    def coboundary(self) -> Tuple[int, ...]:
        return ()


Entity = Union[Vertex, Edge, Face, Solid]

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    import numpy.typing as npt


@dataclass(frozen=True, eq=False)
class Node:
    """
    A mesh node: dense id and 3D position.
    """
    id: int
    position: npt.NDArray[np.float64]

    def __post_init__(self) -> None:
        pos = np.array(self.position, dtype=np.float64).reshape(3)
        pos.setflags(write=False)
        object.__setattr__(self, "position", pos)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id}, position={self.position.tolist()})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Node):
            return NotImplemented
        return self.id == other.id and bool(np.array_equal(self.position, other.position))

    def __hash__(self) -> int:
        return hash((self.id, self.position.tobytes()))

    @property
    def x(self) -> float:
        return float(self.position[0])

    @property
    def y(self) -> float:
        return float(self.position[1])

    @property
    def z(self) -> float:
        return float(self.position[2])

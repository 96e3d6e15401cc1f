"""
Error Taxonomy
==============
Every failure raised by brepmesh derives from :class:`BrepMeshError`.

* MalformedTopology: structural defect in the input geometry.
* UnknownEntity: a property or query references an id that does not exist.
* ToleranceConflict: the position tolerance is inconsistent with the geometry.
* MeshingFailure: one entity could not be discretized.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional


class BrepMeshError(Exception):
    """Base class for all brepmesh errors."""


class MalformedTopology(BrepMeshError):
    """Open loop, dangling reference or other structural defect."""

    def __init__(self, entity: Any, reason: str, message: str = "") -> None:
        self.entity = entity
        self.reason = reason
        text = f"Malformed topology at entity {entity!r} ({reason})"
        if message:
            text += f": {message}"
        super().__init__(text)


class UnknownEntity(BrepMeshError):
    """Reference to an entity (or group) that is not part of the geometry."""

    def __init__(self, ref: Any, message: str = "") -> None:
        self.ref = ref
        super().__init__(message or f"Unknown geometric entity or group: {ref!r}")


class ToleranceConflict(BrepMeshError):
    """Ambiguous deduplication under the configured position tolerance."""

    def __init__(self, entities: Iterable[Any], tolerance: float, message: str = "") -> None:
        self.entities = tuple(entities)
        self.tolerance = tolerance
        text = f"Tolerance conflict between {list(self.entities)} at tolerance {tolerance:g}"
        if message:
            text += f": {message}"
        super().__init__(text)


class MeshingFailure(BrepMeshError):
    """A single geometric entity could not be discretized."""

    def __init__(self, entity: Any, reason: str, message: str = "") -> None:
        self.entity = entity
        self.reason = reason
        text = f"Meshing failed for entity {entity!r} ({reason})"
        if message:
            text += f": {message}"
        super().__init__(text)


class PropertySetFrozen(BrepMeshError):
    """Raised when attaching to a PropertySet after it has been frozen."""


class DiscretizationCancelled(BrepMeshError):
    """The run was cancelled at a checkpoint between entities."""

    def __init__(self, last_entity: Optional[int] = None) -> None:
        self.last_entity = last_entity
        super().__init__("Discretization cancelled" + (
            f" after entity {last_entity}" if last_entity is not None else ""
        ))

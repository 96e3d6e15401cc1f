"""
Query Facade
============
Read-only view over one discretization run for solver front-ends.

Geometric entities appear only as plain integer ids; nothing of the
GeometryModel internals leaks through this interface.
"""
from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple, TYPE_CHECKING, Union

import numpy as np

from brepmesh.errors import UnknownEntity
from brepmesh.export.artifact import MeshArtifact, serialize
from brepmesh.mesh.associativity import AssociativityMap, MeshKind, MeshRef
from brepmesh.mesh.elements import Element
from brepmesh.mesh.mesh import MeshModel

if TYPE_CHECKING:
    import numpy.typing as npt
    from brepmesh.controller.discretizer import DiscretizationResult
    from brepmesh.model.diagnostics import Diagnostic
    from brepmesh.model.properties import PropertySet, PropertyValue

logger = logging.getLogger(__name__)

ResolvedProperties = List[Tuple[str, "PropertyValue"]]


class MeshQuery:
    """
    Usage::

        query = MeshQuery(result)
        for element in query:
            material = dict(query.resolved_properties(element.id)).get("steel")
    """

    def __init__(
        self,
        result_or_mesh: Union[DiscretizationResult, MeshModel],
        associativity: Optional[AssociativityMap] = None,
        properties: Optional[PropertySet] = None,
    ) -> None:
        diagnostics: Tuple[Diagnostic, ...] = ()
        if isinstance(result_or_mesh, MeshModel):
            mesh = result_or_mesh
        else:
            mesh = result_or_mesh.mesh
            associativity = associativity or result_or_mesh.associativity
            properties = properties or result_or_mesh.properties
            diagnostics = result_or_mesh.diagnostics
        if associativity is None:
            raise ValueError("An AssociativityMap is required to query a bare MeshModel.")

        self.mesh = mesh
        self.associativity = associativity
        self.properties = properties
        self._diagnostics = tuple(diagnostics)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.mesh!r}, diagnostics={len(self._diagnostics)})"

    def __len__(self) -> int:
        return self.mesh.element_count()

    def __iter__(self) -> Iterator[Element]:
        return self.mesh.elements()

    @property
    def diagnostics(self) -> Tuple[Diagnostic, ...]:
        return self._diagnostics

    def node_positions(self) -> npt.NDArray[np.float64]:
        return self.mesh.positions

    # ------------------------------------------------------------------
    # Associativity
    # ------------------------------------------------------------------
    def _check(self, ref: MeshRef) -> None:
        count = self.mesh.node_count() if ref.kind == MeshKind.NODE else self.mesh.element_count()
        if not 0 <= ref.id < count:
            raise UnknownEntity(ref, f"No mesh {ref.kind.value} with id {ref.id}")

    def geometry_of(self, ref: MeshRef) -> FrozenSet[int]:
        self._check(ref)
        return self.associativity.geometry_of(ref)

    def primary_geometry_of(self, ref: MeshRef) -> Optional[int]:
        self._check(ref)
        return self.associativity.primary_geometry_of(ref)

    def mesh_of(self, geometry_id: int) -> FrozenSet[MeshRef]:
        return self.associativity.mesh_entities_of(geometry_id)

    def elements_of(self, geometry_id: int) -> List[Element]:
        return [self.mesh.element(e) for e in self.associativity.elements_of(geometry_id)]

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    def _resolve(self, owners: FrozenSet[int]) -> ResolvedProperties:
        if self.properties is None or not owners:
            return []
        return self.properties.resolve(sorted(owners))

    def resolved_properties(self, element_id: int) -> ResolvedProperties:
        """
        Effective properties of an element: everything attached to the
        entities it is associated with, one winner per slot.
        """
        return self._resolve(self.geometry_of(MeshRef.element(element_id)))

    def resolved_node_properties(self, node_id: int) -> ResolvedProperties:
        return self._resolve(self.geometry_of(MeshRef.node(node_id)))

    def property_table(self) -> Dict[int, ResolvedProperties]:
        """Resolved properties of every element that has any."""
        table: Dict[int, ResolvedProperties] = {}
        for element in self.mesh.elements():
            resolved = self.resolved_properties(element.id)
            if resolved:
                table[element.id] = resolved
        logger.debug(f"Resolved properties for {len(table)} of {len(self)} elements.")
        return table

    def serialize(self) -> MeshArtifact:
        return serialize(self.mesh, self.property_table(), self.associativity, self._diagnostics)

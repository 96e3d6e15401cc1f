"""
Discretizer
===========
The dimension-ordered pass that turns a GeometryModel into a conforming
MeshModel plus its AssociativityMap.

Why is this file needed?
------------------------
1. Conformity: every entity is meshed after its boundary, and reuses the
   boundary nodes instead of creating new ones (vertices -> edges -> faces
   -> solids).
2. Provenance: every node and element is recorded against the entities that
   created or reused it.
3. Policy: tolerance, sizing, strictness and determinism come from one
   MeshingPolicy, threaded through the run.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING

import numpy as np

from brepmesh.config import FaceElement, MeshingPolicy, VolumeElement
from brepmesh.controller.face_mesher import FaceMeshInput, FaceMeshResult, mesh_face
from brepmesh.controller.node_index import NodeIndex
from brepmesh.controller.solid_mesher import SolidMeshInput, SolidMeshResult, hexahedralize, tetrahedralize
from brepmesh.controller.workers import CancellationToken, run_jobs
from brepmesh.errors import MalformedTopology, MeshingFailure, ToleranceConflict
from brepmesh.mesh.associativity import AssociativityBuilder, AssociativityMap
from brepmesh.mesh.elements import Element, ElementType
from brepmesh.mesh.mesh import MeshModel
from brepmesh.model.diagnostics import Diagnostic, ReasonCode
from brepmesh.model.topology import Edge, Face, Solid

if TYPE_CHECKING:
    import numpy.typing as npt
    from brepmesh.model.geometry import GeometryModel
    from brepmesh.model.properties import PropertySet

logger = logging.getLogger(__name__)


def _solve(job: Tuple[Callable[[SolidMeshInput], SolidMeshResult], SolidMeshInput]) -> SolidMeshResult:
    mesher, inp = job
    return mesher(inp)


@dataclass(frozen=True)
class DiscretizationResult:
    """Immutable outcome of one run. ``diagnostics`` is empty for a complete mesh."""
    mesh: MeshModel
    associativity: AssociativityMap
    diagnostics: Tuple[Diagnostic, ...]
    tolerance: float
    policy: MeshingPolicy
    properties: Optional[PropertySet] = None

    @property
    def complete(self) -> bool:
        return not self.diagnostics


@dataclass
class _Run:
    """Mutable state of one run; only touched from the calling thread."""
    geometry: GeometryModel
    policy: MeshingPolicy
    tolerance: float
    nodes: NodeIndex
    associativity: AssociativityBuilder = field(default_factory=AssociativityBuilder)
    elements: List[Element] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    vertex_nodes: Dict[int, int] = field(default_factory=dict)
    edge_nodes: Dict[int, npt.NDArray[np.int64]] = field(default_factory=dict)
    face_cells: Dict[int, Tuple[ElementType, npt.NDArray[np.int64]]] = field(default_factory=dict)
    face_grids: Dict[int, npt.NDArray[np.int64]] = field(default_factory=dict)
    # sorted node tuple of every committed element -> entities that generated it
    facet_owners: Dict[Tuple[int, ...], Set[int]] = field(default_factory=lambda: defaultdict(set))
    sizes: Dict[int, float] = field(default_factory=dict)


class Discretizer:
    """
    Usage::

        result = Discretizer(MeshingPolicy(target_element_size=0.5)).run(geometry, properties)
    """

    def __init__(self, policy: Optional[MeshingPolicy] = None) -> None:
        self.policy = policy or MeshingPolicy()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(
        self,
        geometry: GeometryModel,
        properties: Optional[PropertySet] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> DiscretizationResult:
        policy = self.policy
        tolerance = policy.resolve_tolerance(geometry.diagonal)
        logger.info(
            f"Discretizing {geometry!r}: h={policy.target_element_size:g}, tolerance={tolerance:g}, "
            f"strict={policy.strict}, deterministic={policy.deterministic}, workers={policy.workers}."
        )

        if policy.target_element_size <= tolerance:
            raise ToleranceConflict(
                [], tolerance, f"target element size {policy.target_element_size:g} is not above the tolerance"
            )
        if properties is not None:
            if properties.geometry is not geometry:
                properties = properties.rebind(geometry).freeze()
            else:
                properties = properties.snapshot()

        run = _Run(geometry=geometry, policy=policy, tolerance=tolerance, nodes=NodeIndex(tolerance))
        run.sizes = self._resolve_sizes(geometry, policy, tolerance)
        self._carry_ingestion_diagnostics(run)

        self._mesh_vertices(run, cancel)
        self._mesh_edges(run, cancel)
        hexa_solids = self._hexa_solids(run)
        self._mesh_faces(run, hexa_solids, cancel)
        self._mesh_solids(run, hexa_solids, cancel)

        mesh = MeshModel(run.nodes.positions(), run.elements)
        associativity = run.associativity.freeze()
        logger.info(f"Discretization finished: {mesh!r}, {len(run.diagnostics)} diagnostics.")
        for diag in run.diagnostics:
            logger.debug(f"Diagnostic: {diag}")
        return DiscretizationResult(
            mesh=mesh,
            associativity=associativity,
            diagnostics=tuple(run.diagnostics),
            tolerance=tolerance,
            policy=policy,
            properties=properties,
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    @staticmethod
    def _resolve_sizes(geometry: GeometryModel, policy: MeshingPolicy, tolerance: float) -> Dict[int, float]:
        """
        Element size per entity: the smallest override on the entity or on
        any entity it bounds (directly or transitively), else the global size.
        """
        overrides: Dict[int, float] = {}
        for ref, size in policy.size_overrides:
            entity_id = geometry.resolve(ref)
            if size <= tolerance:
                raise ToleranceConflict([geometry.name_of(entity_id)], tolerance,
                                        f"size override {size:g} is not above the tolerance")
            overrides[entity_id] = min(size, overrides.get(entity_id, size))

        sizes: Dict[int, float] = {}
        for entity in geometry:
            best = policy.target_element_size
            stack, seen = [entity.id], set()
            while stack:
                current = stack.pop()
                if current in seen:
                    continue
                seen.add(current)
                if current in overrides:
                    best = min(best, overrides[current])
                stack.extend(geometry.coboundary_of(current))
            sizes[entity.id] = best
        return sizes

    def _carry_ingestion_diagnostics(self, run: _Run) -> None:
        for diag in run.geometry.diagnostics:
            if run.policy.strict and diag.is_topological:
                raise MalformedTopology(diag.entity_name, diag.reason.value, diag.message)
            run.diagnostics.append(diag)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _diagnose(self, run: _Run, entity_id: int, reason: ReasonCode, message: str) -> None:
        entity = run.geometry.entity(entity_id)
        diag = Diagnostic(
            entity_name=entity.name, reason=reason, message=message, entity_id=entity_id, kind=entity.kind.value
        )
        if any(d.entity_name == diag.entity_name and d.reason == reason for d in run.diagnostics):
            return
        logger.warning(f"{diag}")
        run.diagnostics.append(diag)

    def _fail(self, run: _Run, entity_id: int, reason: ReasonCode, message: str) -> None:
        """Per-entity meshing failure: raise under strict policy, otherwise a diagnostic."""
        if run.policy.strict:
            raise MeshingFailure(run.geometry.name_of(entity_id), reason.value, message)
        self._diagnose(run, entity_id, reason, message)

    def _add_element(self, run: _Run, element_type: ElementType, nodes: Iterable[int], owner: int) -> Element:
        element = Element(id=len(run.elements), type=element_type, nodes=tuple(int(n) for n in nodes))
        run.elements.append(element)
        run.associativity.add_element(element.id, owner, primary=True)
        # Facets lying on a lower-dimensional entity's elements link the element to it
        for facet in element.facets():
            for boundary_owner in run.facet_owners.get(tuple(sorted(facet)), ()):
                run.associativity.add_element(element.id, boundary_owner)
        run.facet_owners[tuple(sorted(element.nodes))].add(owner)
        return element

    # ------------------------------------------------------------------
    # Dimension 0
    # ------------------------------------------------------------------
    def _mesh_vertices(self, run: _Run, cancel: Optional[CancellationToken]) -> None:
        geometry = run.geometry
        # Vertices joined by a degenerate edge may legitimately share a node
        collapsible: Set[Tuple[int, int]] = set()
        for edge in geometry.edges:
            if edge.degenerate:
                collapsible.add((min(edge.start, edge.end), max(edge.start, edge.end)))

        for vertex in geometry.vertices:
            if cancel is not None:
                cancel.check(vertex.id)
            node_id, created = run.nodes.get_or_create(vertex.position, owner=vertex.id)
            if not created:
                other = run.nodes.owner(node_id)
                if (min(other, vertex.id), max(other, vertex.id)) not in collapsible:
                    raise ToleranceConflict(
                        [geometry.name_of(other), vertex.name], run.tolerance,
                        "two distinct vertices lie within the position tolerance",
                    )
            run.vertex_nodes[vertex.id] = node_id
            run.associativity.add_node(node_id, vertex.id, primary=created)
            self._add_element(run, ElementType.POINT, (node_id,), vertex.id)
        logger.info(f"Meshed {len(geometry.vertices)} vertices.")

    # ------------------------------------------------------------------
    # Dimension 1
    # ------------------------------------------------------------------
    def _mesh_edges(self, run: _Run, cancel: Optional[CancellationToken]) -> None:
        geometry = run.geometry
        tol = run.tolerance
        n_elements = len(run.elements)
        for edge in geometry.edges:
            if cancel is not None:
                cancel.check(edge.id)
            start, end = run.vertex_nodes[edge.start], run.vertex_nodes[edge.end]

            if edge.degenerate:
                run.edge_nodes[edge.id] = np.array([start, end], dtype=np.int64)
                run.associativity.add_nodes((start, end), edge.id)
                if run.policy.strict:
                    raise MeshingFailure(edge.name, ReasonCode.DEGENERATE_EDGE.value, "zero-length edge")
                self._diagnose(run, edge.id, ReasonCode.DEGENERATE_EDGE, "zero-length edge produces no elements")
                continue

            size = run.sizes[edge.id]
            segments = edge.curve.number_of_segments(size)
            samples = edge.curve.discretize(segments=segments)
            spacing = np.linalg.norm(np.diff(samples, axis=0), axis=1)
            if float(spacing.min()) <= tol:
                raise ToleranceConflict([edge.name], tol, f"edge samples {spacing.min():g} apart")

            interior_ids, _ = run.nodes.get_or_create_many(samples[1:-1], owner=edge.id)
            chain = np.concatenate(([start], interior_ids, [end])).astype(np.int64)
            inner = chain[:-1] if edge.start == edge.end else chain
            if len(set(inner.tolist())) != len(inner):
                raise ToleranceConflict([edge.name], tol, "edge samples collapse onto the same node")

            run.edge_nodes[edge.id] = chain
            for node_id in chain.tolist():
                run.associativity.add_node(node_id, edge.id)
            for a, b in zip(chain[:-1], chain[1:]):
                self._add_element(run, ElementType.LINE, (a, b), edge.id)
        logger.info(f"Meshed {len(geometry.edges)} edges into {len(run.elements) - n_elements} line elements.")

    # ------------------------------------------------------------------
    # Structured policy
    # ------------------------------------------------------------------
    def _four_sided(self, run: _Run, face: Face) -> bool:
        if len(face.loops) != 1 or len(face.loops[0].uses) != 4:
            return False
        counts = []
        for use in face.loops[0].uses:
            edge: Edge = run.geometry.entity(use.edge)
            if edge.degenerate or use.edge not in run.edge_nodes:
                return False
            counts.append(len(run.edge_nodes[use.edge]) - 1)
        return counts[0] == counts[2] and counts[1] == counts[3]

    def _hexa_solids(self, run: _Run) -> Set[int]:
        """Solids that get a structured hexahedral mesh under the hexa policy."""
        if run.policy.volume_element != VolumeElement.HEXA:
            return set()
        geometry = run.geometry
        candidates = {
            s.id for s in geometry.solids
            if len(s.faces) == 6 and all(self._four_sided(run, geometry.entity(f)) for f in s.faces)
        }
        # A face shared with a tetrahedral solid must stay triangulated
        changed = True
        while changed:
            changed = False
            for solid_id in sorted(candidates):
                solid: Solid = geometry.entity(solid_id)
                if any(other not in candidates for f in solid.faces for other in geometry.coboundary_of(f)):
                    candidates.discard(solid_id)
                    changed = True
        for solid in geometry.solids:
            if solid.id not in candidates:
                logger.info(f"Solid {solid.name!r} is not a structured block; using tetrahedra.")
        return candidates

    def _face_element(self, run: _Run, face: Face, hexa_solids: Set[int]) -> FaceElement:
        if not self._four_sided(run, face):
            return FaceElement.TRIANGLE
        if face.solids:
            if all(s in hexa_solids for s in face.solids):
                return FaceElement.QUAD
            return FaceElement.TRIANGLE
        return run.policy.face_element

    # ------------------------------------------------------------------
    # Dimension 2
    # ------------------------------------------------------------------
    def _face_job(self, run: _Run, face: Face, element: FaceElement) -> Optional[Tuple[FaceMeshInput, npt.NDArray[np.int64]]]:
        """Boundary slots of a face, or None if a bounding edge has no mesh."""
        positions = []
        slot_nodes: List[int] = []
        sides: Optional[List[int]] = [] if len(face.loops) == 1 else None
        for loop in face.loops:
            loop_nodes: List[int] = []
            for use in loop.uses:
                if use.edge not in run.edge_nodes:
                    return None
                chain = run.edge_nodes[use.edge]
                if use.reversed:
                    chain = chain[::-1]
                if sides is not None:
                    sides.append(len(loop_nodes))
                loop_nodes.extend(chain[:-1].tolist())
            # Degenerate edges leave repeated consecutive nodes
            cleaned = [n for k, n in enumerate(loop_nodes) if n != loop_nodes[k - 1]] if len(loop_nodes) > 1 else loop_nodes
            if len(cleaned) != len(loop_nodes):
                sides = None
            slot_nodes.extend(cleaned)
            positions.append(np.array([run.nodes.position(n) for n in cleaned]).reshape(-1, 3))

        job = FaceMeshInput(
            face_id=face.id,
            surface=face.surface,
            sense=face.sense,
            loops=positions,
            size=run.sizes[face.id],
            tolerance=run.tolerance,
            element=element,
            sides=sides,
            seed=face.id,
        )
        return job, np.array(slot_nodes, dtype=np.int64)

    def _mesh_faces(self, run: _Run, hexa_solids: Set[int], cancel: Optional[CancellationToken]) -> None:
        geometry = run.geometry
        jobs = []
        slots: Dict[int, npt.NDArray[np.int64]] = {}
        for face in geometry.faces:
            prepared = self._face_job(run, face, self._face_element(run, face, hexa_solids))
            if prepared is None:
                self._fail(run, face.id, ReasonCode.BOUNDARY_NOT_MESHED, "a bounding edge has no mesh")
                continue
            job, slot_nodes = prepared
            slots[face.id] = slot_nodes
            jobs.append((face.id, job))

        n_elements = len(run.elements)
        for outcome in run_jobs(jobs, mesh_face, run.policy.workers, run.policy.deterministic, cancel):
            if outcome.error is not None:
                if isinstance(outcome.error, MeshingFailure):
                    self._fail(run, outcome.key, ReasonCode.TRIANGULATION_FAILED, str(outcome.error))
                    continue
                raise outcome.error
            self._commit_face(run, outcome.result, slots[outcome.key])
        logger.info(f"Meshed {len(jobs)} faces into {len(run.elements) - n_elements} surface elements.")

    def _commit_face(self, run: _Run, result: FaceMeshResult, slot_nodes: npt.NDArray[np.int64]) -> None:
        face_id = result.face_id
        if result.degenerate:
            self._fail(run, face_id, ReasonCode.DEGENERATE_FACE, result.message)
            return

        interior_ids, _ = run.nodes.get_or_create_many(result.interior_points, owner=face_id)
        lookup = np.concatenate((slot_nodes, interior_ids)).astype(np.int64)
        cells = lookup[result.cells]
        repeated = [c for c in cells if len(set(c.tolist())) != len(c)]
        if repeated:
            self._fail(run, face_id, ReasonCode.TRIANGULATION_FAILED,
                       f"{len(repeated)} elements collapse across a seam")
            return

        for node_id in np.unique(lookup).tolist():
            run.associativity.add_node(node_id, face_id)
        for cell in cells:
            self._add_element(run, result.element_type, cell, face_id)
        run.face_cells[face_id] = (result.element_type, cells)
        if result.grid is not None:
            run.face_grids[face_id] = lookup[result.grid]
        logger.debug(f"Face {run.geometry.name_of(face_id)!r}: {len(cells)} {result.element_type.value} ({result.method}).")

    # ------------------------------------------------------------------
    # Dimension 3
    # ------------------------------------------------------------------
    def _mesh_solids(self, run: _Run, hexa_solids: Set[int], cancel: Optional[CancellationToken]) -> None:
        geometry = run.geometry
        if not geometry.solids:
            return
        positions = run.nodes.positions()
        jobs = []
        for solid in geometry.solids:
            missing = [f for f in solid.faces if f not in run.face_cells]
            if missing:
                names = [geometry.name_of(f) for f in missing]
                self._fail(run, solid.id, ReasonCode.BOUNDARY_NOT_MESHED, f"faces without mesh: {names}")
                continue
            if solid.id in hexa_solids:
                job = SolidMeshInput(
                    solid_id=solid.id,
                    positions=positions,
                    boundary=np.empty((0, 3), dtype=np.int64),
                    size=run.sizes[solid.id],
                    tolerance=run.tolerance,
                    seed=solid.id,
                    face_grids=[run.face_grids[f] for f in solid.faces if f in run.face_grids],
                )
                jobs.append((solid.id, (hexahedralize, job)))
                continue
            kinds = {run.face_cells[f][0] for f in solid.faces}
            if kinds != {ElementType.TRIANGLE}:
                self._fail(run, solid.id, ReasonCode.TETRAHEDRALIZATION_FAILED,
                           "tetrahedral meshing needs triangulated faces")
                continue
            boundary = np.vstack([run.face_cells[f][1] for f in solid.faces])
            job = SolidMeshInput(
                solid_id=solid.id,
                positions=positions,
                boundary=boundary,
                size=run.sizes[solid.id],
                tolerance=run.tolerance,
                seed=solid.id,
            )
            jobs.append((solid.id, (tetrahedralize, job)))

        n_elements = len(run.elements)
        for outcome in run_jobs(jobs, _solve, run.policy.workers, run.policy.deterministic, cancel):
            if outcome.error is not None:
                if isinstance(outcome.error, MeshingFailure):
                    reason = ReasonCode(outcome.error.reason)
                    self._fail(run, outcome.key, reason, str(outcome.error))
                    continue
                raise outcome.error
            self._commit_solid(run, outcome.result)
        logger.info(f"Meshed {len(jobs)} solids into {len(run.elements) - n_elements} volume elements.")

    def _commit_solid(self, run: _Run, result: SolidMeshResult) -> None:
        solid_id = result.solid_id
        new_ids, _ = run.nodes.get_or_create_many(result.interior_points, owner=solid_id)
        cells = np.where(result.cells >= 0, result.cells, new_ids[np.maximum(-result.cells - 1, 0)] if len(new_ids) else 0)

        used = np.unique(cells)
        for node_id in used.tolist():
            run.associativity.add_node(node_id, solid_id)
        for cell in cells:
            self._add_element(run, result.element_type, cell, solid_id)
        logger.debug(
            f"Solid {run.geometry.name_of(solid_id)!r}: {len(cells)} {result.element_type.value} ({result.method})."
        )


def discretize(
    geometry: GeometryModel,
    policy: Optional[MeshingPolicy] = None,
    properties: Optional[PropertySet] = None,
    cancel: Optional[CancellationToken] = None,
) -> DiscretizationResult:
    return Discretizer(policy).run(geometry, properties, cancel)

"""
Geometry Model (B-rep arena)
============================
Validates a raw boundary graph and stores it as an immutable arena of
entities indexed by dense integer id.

Why is this file needed?
------------------------
1. Validation: open loops, dangling references and open shells are caught
   once, at ingestion, instead of surfacing as meshing artefacts.
2. Identity: every accepted entity receives a stable dense id (dimension
   order, then input order); the raw input key is kept as its name.
3. Traversal: boundary / coboundary queries used by the Discretizer.

Raw graph format (all keys are plain JSON types)::

    {
      "vertices": [{"id": "v0", "position": [x, y, z]}, ...],
      "edges":    [{"id": "e0", "vertices": ["v0", "v1"],
                    "curve": {...}, "degenerate": false}, ...],
      "faces":    [{"id": "f0", "surface": {...}, "sense": true,
                    "loops": [[{"edge": "e0", "reversed": false}, ...], ...]}, ...],
      "solids":   [{"id": "s0", "faces": ["f0", ...]}, ...]
    }
"""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple, TYPE_CHECKING

import numpy as np

from brepmesh.config import EntityRef, IngestPolicy
from brepmesh.errors import MalformedTopology, UnknownEntity
from brepmesh.model.diagnostics import Diagnostic, ReasonCode
from brepmesh.model.geometry_primitives import Curve, LineCurve, Surface
from brepmesh.model.topology import Edge, EdgeUse, Entity, EntityKind, Face, Loop, Solid, Vertex
from brepmesh.utils import BoundingBox, as_point

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)


class _Skip(Exception):
    """Internal: the entity being ingested is rejected."""

    def __init__(self, reason: ReasonCode, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


@dataclass
class _Ingestion:
    """Mutable scratch state of one ``GeometryModel.ingest`` call."""
    policy: IngestPolicy
    tolerance: float
    names: Dict[Hashable, int] = field(default_factory=dict)
    skipped: Dict[Hashable, ReasonCode] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    next_id: int = 0

    def reject(self, kind: EntityKind, name: Hashable, error: _Skip) -> None:
        if not self.policy.best_effort:
            raise MalformedTopology(name, error.reason.value, error.message)
        logger.warning(f"Skipping {kind.value} {name!r}: {error.reason.value} - {error.message}")
        self.skipped[name] = error.reason
        self.diagnostics.append(Diagnostic(
            entity_name=name, reason=error.reason, message=error.message, kind=kind.value
        ))

    def lookup(self, ref: Hashable, expected: Dict[Hashable, Any]) -> Any:
        """Resolve a reference to an already accepted entity of one dimension."""
        if isinstance(ref, list):
            ref = tuple(ref)
        if ref in expected:
            return expected[ref]
        if ref in self.skipped:
            raise _Skip(ReasonCode.DEPENDENCY_SKIPPED, f"depends on skipped entity {ref!r}")
        raise _Skip(ReasonCode.DANGLING_REFERENCE, f"reference to unknown entity {ref!r}")

    def claim(self, name: Hashable) -> int:
        if name in self.names:
            raise _Skip(ReasonCode.INVALID_DEFINITION, f"duplicate entity id {name!r}")
        entity_id = self.next_id
        self.next_id += 1
        self.names[name] = entity_id
        return entity_id


class GeometryModel:
    """
    Immutable B-rep arena.

    Construct with :meth:`ingest`; every entity is addressed by its dense id or
    by its input name.
    """

    def __init__(
        self,
        entities: List[Entity],
        diagnostics: Iterable[Diagnostic] = (),
        tolerance: float = 0.0,
    ) -> None:
        self._entities: Tuple[Entity, ...] = tuple(entities)
        self._names: Dict[Hashable, int] = {e.name: e.id for e in self._entities}
        self._by_kind: Dict[EntityKind, Tuple[Entity, ...]] = {
            kind: tuple(e for e in self._entities if e.kind == kind) for kind in EntityKind
        }
        self.diagnostics: Tuple[Diagnostic, ...] = tuple(diagnostics)
        self.tolerance = tolerance

        positions = [v.position for v in self._by_kind[EntityKind.VERTEX]]
        self._bbox = BoundingBox.of_points(np.array(positions) if positions else np.empty((0, 3)))

    def __repr__(self) -> str:
        counts = ", ".join(f"{len(self._by_kind[k])} {k.value}" for k in EntityKind)
        return f"{self.__class__.__name__}({counts})"

    def __len__(self) -> int:
        return len(self._entities)

    def __iter__(self):
        return iter(self._entities)

    def __contains__(self, ref: EntityRef) -> bool:
        try:
            self.resolve(ref)
        except UnknownEntity:
            return False
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def resolve(self, ref: EntityRef) -> int:
        """Dense id for an id or an input name."""
        if isinstance(ref, (int, np.integer)) and not isinstance(ref, bool):
            if 0 <= int(ref) < len(self._entities):
                return int(ref)
            # Integer input names are allowed too
            if ref in self._names:
                return self._names[ref]
            raise UnknownEntity(ref)
        if ref in self._names:
            return self._names[ref]
        raise UnknownEntity(ref)

    def entity(self, ref: EntityRef) -> Entity:
        return self._entities[self.resolve(ref)]

    def name_of(self, ref: EntityRef) -> Hashable:
        return self.entity(ref).name

    def kind_of(self, ref: EntityRef) -> EntityKind:
        return self.entity(ref).kind

    def entities_of_dimension(self, dim: int) -> Tuple[Entity, ...]:
        return self._by_kind[EntityKind.of_dimension(dim)]

    @property
    def vertices(self) -> Tuple[Vertex, ...]:
        return self._by_kind[EntityKind.VERTEX]  # type: ignore[return-value]

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return self._by_kind[EntityKind.EDGE]  # type: ignore[return-value]

    @property
    def faces(self) -> Tuple[Face, ...]:
        return self._by_kind[EntityKind.FACE]  # type: ignore[return-value]

    @property
    def solids(self) -> Tuple[Solid, ...]:
        return self._by_kind[EntityKind.SOLID]  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------
    def boundary_of(self, ref: EntityRef) -> Tuple[int, ...]:
        """Ids of the entities one dimension lower bounding ``ref``."""
        return self.entity(ref).boundary

    def coboundary_of(self, ref: EntityRef) -> Tuple[int, ...]:
        """Ids of the entities one dimension higher bounded by ``ref``."""
        return self.entity(ref).coboundary

    def closure_of(self, ref: EntityRef) -> Tuple[int, ...]:
        """``ref`` and every lower-dimensional entity reachable through boundary links."""
        seen: Dict[int, None] = {}
        stack = [self.resolve(ref)]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen[current] = None
            stack.extend(self._entities[current].boundary)
        return tuple(sorted(seen))

    def vertex_position(self, ref: EntityRef) -> npt.NDArray[np.float64]:
        vertex = self.entity(ref)
        if not isinstance(vertex, Vertex):
            raise TypeError(f"Entity {ref!r} is a {vertex.kind.value}, not a vertex")
        return vertex.position

    def oriented_vertices(self, use: EdgeUse) -> Tuple[int, int]:
        edge: Edge = self._entities[use.edge]  # type: ignore[assignment]
        return (edge.end, edge.start) if use.reversed else (edge.start, edge.end)

    def bounding_box(self) -> BoundingBox:
        return self._bbox

    @property
    def diagonal(self) -> float:
        return self._bbox.diagonal

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    @classmethod
    def ingest(cls, raw: Dict[str, Any], policy: Optional[IngestPolicy] = None) -> GeometryModel:
        """
        Validate ``raw`` and build the arena.

        Raises MalformedTopology on the first defect unless
        ``policy.best_effort``, in which case defective entities (and every
        entity depending on them) are skipped with a diagnostic each.
        """
        policy = policy or IngestPolicy()

        raw_vertices = list(raw.get("vertices", []))
        try:
            positions = np.array([as_point(v["position"]) for v in raw_vertices]).reshape(-1, 3)
            diagonal = BoundingBox.of_points(positions).diagonal
        except (KeyError, TypeError, ValueError):
            diagonal = 0.0
        state = _Ingestion(policy=policy, tolerance=policy.resolve_tolerance(diagonal))

        logger.info(
            f"Ingesting boundary graph: {len(raw_vertices)} vertices, {len(raw.get('edges', []))} edges, "
            f"{len(raw.get('faces', []))} faces, {len(raw.get('solids', []))} solids "
            f"(tolerance {state.tolerance:g}, best_effort={policy.best_effort})."
        )

        vertices = cls._ingest_vertices(state, raw_vertices)
        edges = cls._ingest_edges(state, raw.get("edges", []), vertices)
        faces = cls._ingest_faces(state, raw.get("faces", []), vertices, edges)
        solids = cls._ingest_solids(state, raw.get("solids", []), edges, faces)

        entities = cls._link(vertices, edges, faces, solids)
        model = cls(entities, diagnostics=state.diagnostics, tolerance=state.tolerance)
        logger.info(f"Ingested {model!r} with {len(model.diagnostics)} diagnostics.")
        return model

    @staticmethod
    def _name_of(record: Dict[str, Any], kind: EntityKind, index: int) -> Hashable:
        name = record.get("id", f"{kind.value}{index}")
        return tuple(name) if isinstance(name, list) else name

    @classmethod
    def _ingest_vertices(cls, state: _Ingestion, records: List[Dict[str, Any]]) -> Dict[Hashable, Vertex]:
        accepted: Dict[Hashable, Vertex] = {}
        for i, record in enumerate(records):
            name = cls._name_of(record, EntityKind.VERTEX, i)
            try:
                try:
                    position = as_point(record["position"])
                except (KeyError, TypeError, ValueError) as e:
                    raise _Skip(ReasonCode.INVALID_DEFINITION, f"bad position: {e}")
                if not np.all(np.isfinite(position)):
                    raise _Skip(ReasonCode.INVALID_DEFINITION, "non-finite position")
                position.setflags(write=False)
                entity_id = state.claim(name)
            except _Skip as skip:
                state.reject(EntityKind.VERTEX, name, skip)
                continue
            accepted[name] = Vertex(id=entity_id, name=name, position=position)
        return accepted

    @classmethod
    def _ingest_edges(
        cls,
        state: _Ingestion,
        records: List[Dict[str, Any]],
        vertices: Dict[Hashable, Vertex],
    ) -> Dict[Hashable, Edge]:
        accepted: Dict[Hashable, Edge] = {}
        tol = state.tolerance
        for i, record in enumerate(records):
            name = cls._name_of(record, EntityKind.EDGE, i)
            try:
                refs = record.get("vertices", [])
                if not isinstance(refs, (list, tuple)) or len(refs) != 2:
                    raise _Skip(ReasonCode.BAD_VERTEX_COUNT, f"edge must reference exactly 2 vertices, got {refs!r}")
                v0: Vertex = state.lookup(refs[0], vertices)
                v1: Vertex = state.lookup(refs[1], vertices)

                curve = cls._parse_curve(record.get("curve"), v0, v1)

                if float(np.linalg.norm(curve.start - v0.position)) > tol or \
                        float(np.linalg.norm(curve.end - v1.position)) > tol:
                    raise _Skip(
                        ReasonCode.ENDPOINT_MISMATCH,
                        f"curve endpoints {curve.start.tolist()} / {curve.end.tolist()} do not match "
                        f"vertices {refs[0]!r} / {refs[1]!r}",
                    )

                flagged = bool(record.get("degenerate", False))
                zero_length = curve.length <= tol
                if flagged and not zero_length:
                    raise _Skip(
                        ReasonCode.INVALID_DEFINITION,
                        f"edge flagged degenerate but has length {curve.length:g}",
                    )
                entity_id = state.claim(name)
            except _Skip as skip:
                state.reject(EntityKind.EDGE, name, skip)
                continue

            if zero_length and not flagged:
                logger.warning(f"Edge {name!r} has zero length; flagged degenerate.")
                state.diagnostics.append(Diagnostic(
                    entity_name=name, entity_id=entity_id, reason=ReasonCode.DEGENERATE_EDGE,
                    message="zero-length edge flagged degenerate at ingestion", kind=EntityKind.EDGE.value,
                ))

            accepted[name] = Edge(
                id=entity_id, name=name, start=v0.id, end=v1.id, curve=curve, degenerate=zero_length,
            )
        return accepted

    @staticmethod
    def _parse_curve(data: Optional[Dict[str, Any]], v0: Vertex, v1: Vertex) -> Curve:
        if data is None:
            return LineCurve(v0.position, v1.position)
        try:
            return Curve.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise _Skip(ReasonCode.INVALID_DEFINITION, f"bad curve definition: {e}")

    @classmethod
    def _ingest_faces(
        cls,
        state: _Ingestion,
        records: List[Dict[str, Any]],
        vertices: Dict[Hashable, Vertex],
        edges: Dict[Hashable, Edge],
    ) -> Dict[Hashable, Face]:
        accepted: Dict[Hashable, Face] = {}
        positions = {v.id: v.position for v in vertices.values()}
        edges_by_id = {e.id: e for e in edges.values()}
        tol = state.tolerance
        for i, record in enumerate(records):
            name = cls._name_of(record, EntityKind.FACE, i)
            try:
                try:
                    surface = Surface.from_dict(record["surface"])
                except (KeyError, TypeError, ValueError) as e:
                    raise _Skip(ReasonCode.INVALID_DEFINITION, f"bad surface definition: {e}")

                raw_loops = record.get("loops", [])
                if not raw_loops:
                    raise _Skip(ReasonCode.OPEN_LOOP, "face has no boundary loop")

                loops: List[Loop] = []
                for raw_loop in raw_loops:
                    uses = tuple(cls._parse_use(state, item, edges) for item in raw_loop)
                    if not uses:
                        raise _Skip(ReasonCode.OPEN_LOOP, "empty loop")
                    cls._check_loop_closes(name, uses, edges)
                    loops.append(Loop(uses=uses))

                for loop in loops:
                    for use in loop.uses:
                        edge = edges_by_id[use.edge]
                        probe = np.vstack((
                            positions[edge.start],
                            positions[edge.end],
                            edge.curve.point_at(0.5 * (edge.curve.domain[0] + edge.curve.domain[1])),
                        ))
                        off = surface.distance(probe)
                        if float(off.max()) > tol:
                            raise _Skip(
                                ReasonCode.VERTEX_OFF_SURFACE,
                                f"edge {edge.name!r} lies {float(off.max()):g} off the face surface",
                            )
                        if not surface.within_domain(surface.parameters(probe), tol).all():
                            raise _Skip(
                                ReasonCode.VERTEX_OFF_SURFACE,
                                f"edge {edge.name!r} leaves the surface domain",
                            )
                entity_id = state.claim(name)
            except _Skip as skip:
                state.reject(EntityKind.FACE, name, skip)
                continue

            accepted[name] = Face(
                id=entity_id, name=name, surface=surface, loops=tuple(loops),
                sense=bool(record.get("sense", True)),
            )
        return accepted

    @staticmethod
    def _parse_use(state: _Ingestion, item: Any, edges: Dict[Hashable, Edge]) -> EdgeUse:
        if isinstance(item, dict):
            ref, reversed_ = item.get("edge"), bool(item.get("reversed", False))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            ref, reversed_ = item[0], bool(item[1])
        else:
            ref, reversed_ = item, False
        edge: Edge = state.lookup(ref, edges)
        return EdgeUse(edge=edge.id, reversed=reversed_)

    @staticmethod
    def _check_loop_closes(name: Hashable, uses: Tuple[EdgeUse, ...], edges: Dict[Hashable, Edge]) -> None:
        by_id = {e.id: e for e in edges.values()}
        ends = []
        for use in uses:
            edge = by_id[use.edge]
            ends.append((edge.end, edge.start) if use.reversed else (edge.start, edge.end))
        for k, (_, end) in enumerate(ends):
            next_start = ends[(k + 1) % len(ends)][0]
            if end != next_start:
                raise _Skip(
                    ReasonCode.OPEN_LOOP,
                    f"loop of face {name!r} is open after edge {by_id[uses[k].edge].name!r}",
                )

    @classmethod
    def _ingest_solids(
        cls,
        state: _Ingestion,
        records: List[Dict[str, Any]],
        edges: Dict[Hashable, Edge],
        faces: Dict[Hashable, Face],
    ) -> Dict[Hashable, Solid]:
        accepted: Dict[Hashable, Solid] = {}
        degenerate = {e.id for e in edges.values() if e.degenerate}
        edge_names = {e.id: e.name for e in edges.values()}
        for i, record in enumerate(records):
            name = cls._name_of(record, EntityKind.SOLID, i)
            try:
                refs = record.get("faces", [])
                if not refs:
                    raise _Skip(ReasonCode.OPEN_SHELL, "solid has no faces")
                shell: List[Face] = [state.lookup(ref, faces) for ref in refs]
                if len({f.id for f in shell}) != len(shell):
                    raise _Skip(ReasonCode.INVALID_DEFINITION, "face listed twice in shell")

                uses = Counter(
                    use.edge for face in shell for loop in face.loops for use in loop.uses
                    if use.edge not in degenerate
                )
                open_edges = sorted(edge_names[e] for e, n in uses.items() if n != 2)
                if open_edges:
                    raise _Skip(
                        ReasonCode.OPEN_SHELL,
                        f"shell is not watertight; edges used other than twice: {open_edges}",
                    )
                entity_id = state.claim(name)
            except _Skip as skip:
                state.reject(EntityKind.SOLID, name, skip)
                continue
            accepted[name] = Solid(id=entity_id, name=name, faces=tuple(f.id for f in shell))
        return accepted

    @staticmethod
    def _link(
        vertices: Dict[Hashable, Vertex],
        edges: Dict[Hashable, Edge],
        faces: Dict[Hashable, Face],
        solids: Dict[Hashable, Solid],
    ) -> List[Entity]:
        """Fill the upward (coboundary) links and return the arena in id order."""
        vertex_edges: Dict[int, List[int]] = defaultdict(list)
        for e in edges.values():
            for v in dict.fromkeys((e.start, e.end)):
                vertex_edges[v].append(e.id)
        edge_faces: Dict[int, List[int]] = defaultdict(list)
        for f in faces.values():
            for e in f.edges:
                edge_faces[e].append(f.id)
        face_solids: Dict[int, List[int]] = defaultdict(list)
        for s in solids.values():
            for f in s.faces:
                face_solids[f].append(s.id)

        entities: List[Entity] = []
        for v in vertices.values():
            entities.append(Vertex(id=v.id, name=v.name, position=v.position, edges=tuple(vertex_edges[v.id])))
        for e in edges.values():
            entities.append(Edge(
                id=e.id, name=e.name, start=e.start, end=e.end, curve=e.curve,
                degenerate=e.degenerate, faces=tuple(edge_faces[e.id]),
            ))
        for f in faces.values():
            entities.append(Face(
                id=f.id, name=f.name, surface=f.surface, loops=f.loops, sense=f.sense,
                solids=tuple(face_solids[f.id]),
            ))
        entities.extend(solids.values())
        entities.sort(key=lambda ent: ent.id)
        return entities

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        """Raw graph of the accepted entities; ``ingest(model.to_dict())`` rebuilds the model."""
        def ref(entity_id: int) -> Any:
            name = self._entities[entity_id].name
            return list(name) if isinstance(name, tuple) else name

        return {
            "vertices": [{"id": ref(v.id), "position": v.position.tolist()} for v in self.vertices],
            "edges": [
                {
                    "id": ref(e.id),
                    "vertices": [ref(e.start), ref(e.end)],
                    "curve": e.curve.to_dict(),
                    "degenerate": e.degenerate,
                }
                for e in self.edges
            ],
            "faces": [
                {
                    "id": ref(f.id),
                    "surface": f.surface.to_dict(),
                    "sense": f.sense,
                    "loops": [
                        [{"edge": ref(u.edge), "reversed": u.reversed} for u in loop.uses]
                        for loop in f.loops
                    ],
                }
                for f in self.faces
            ],
            "solids": [{"id": ref(s.id), "faces": [ref(f) for f in s.faces]} for s in self.solids],
        }

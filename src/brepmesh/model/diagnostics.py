"""
Diagnostics
===========
Non-fatal findings of ingestion and discretization: one entry per skipped or
degenerate entity, or per meshing failure.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import StrEnum
from typing import Any, Dict, Hashable, Optional


class ReasonCode(StrEnum):
    # Ingestion
    DANGLING_REFERENCE = "dangling_reference"
    BAD_VERTEX_COUNT = "bad_vertex_count"
    ENDPOINT_MISMATCH = "endpoint_mismatch"
    OPEN_LOOP = "open_loop"
    VERTEX_OFF_SURFACE = "vertex_off_surface"
    OPEN_SHELL = "open_shell"
    INVALID_DEFINITION = "invalid_definition"
    DEPENDENCY_SKIPPED = "dependency_skipped"
    # Both
    DEGENERATE_EDGE = "degenerate_edge"
    DEGENERATE_FACE = "degenerate_face"
    # Discretization
    TRIANGULATION_FAILED = "triangulation_failed"
    TETRAHEDRALIZATION_FAILED = "tetrahedralization_failed"
    BOUNDARY_NOT_MESHED = "boundary_not_meshed"


# Reasons that describe a structural defect of the input (as opposed to a
# meshing problem); they map to MalformedTopology under strict policy.
TOPOLOGY_REASONS = frozenset({
    ReasonCode.DANGLING_REFERENCE,
    ReasonCode.BAD_VERTEX_COUNT,
    ReasonCode.ENDPOINT_MISMATCH,
    ReasonCode.OPEN_LOOP,
    ReasonCode.VERTEX_OFF_SURFACE,
    ReasonCode.OPEN_SHELL,
    ReasonCode.INVALID_DEFINITION,
    ReasonCode.DEPENDENCY_SKIPPED,
})


@dataclass(frozen=True)
class Diagnostic:
    """
    entity_id is the dense id of the entity when it exists in the model;
    entities skipped at ingestion only have their input name.
    """
    entity_name: Hashable
    reason: ReasonCode
    message: str = ""
    entity_id: Optional[int] = None
    kind: Optional[str] = None

    @property
    def is_topological(self) -> bool:
        return self.reason in TOPOLOGY_REASONS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reason"] = self.reason.value
        data["entity_name"] = str(self.entity_name)
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Diagnostic:
        return Diagnostic(
            entity_name=data["entity_name"],
            reason=ReasonCode(data["reason"]),
            message=data.get("message", ""),
            entity_id=data.get("entity_id"),
            kind=data.get("kind"),
        )

    def __str__(self) -> str:
        where = f"{self.kind or 'entity'} {self.entity_name!r}"
        if self.entity_id is not None:
            where += f" (id={self.entity_id})"
        return f"{where}: {self.reason.value}" + (f" - {self.message}" if self.message else "")

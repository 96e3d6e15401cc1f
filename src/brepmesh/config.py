"""
Configuration & Policy
======================
This module is the central registry for numeric constants and the policy
objects that are threaded into ingestion and discretization.

Why is this file needed?
------------------------
1. Explicit state: tolerance and sizing are run parameters, never globals, so
   two runs with different policies cannot interfere.
2. Persistence: policies round-trip through plain dicts / JSON so a run can be
   reproduced from a file next to the emitted mesh artifact.

Exports:
    DEFAULT_EPSILON (float): Absolute floor for any tolerance.
    DEFAULT_RELATIVE_TOLERANCE (float): Position tolerance relative to the
        model bounding-box diagonal.
    IngestPolicy, MeshingPolicy: frozen policy dataclasses.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from enum import StrEnum
from typing import Any, Dict, Hashable, Iterable, Mapping, Optional, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_EPSILON: float = 1e-12
DEFAULT_RELATIVE_TOLERANCE: float = 1e-9
# Ingestion matches curve endpoints to vertices more loosely than meshing dedups
DEFAULT_INGEST_RELATIVE_TOLERANCE: float = 1e-7

# Numeric encoding of the emitted artifact
FLOAT_DTYPE = np.float64
INDEX_DTYPE = np.int64

# Lower bound on segments for curves whose two vertices coincide (full circles)
MIN_CLOSED_CURVE_SEGMENTS: int = 3

EntityRef = Union[int, Hashable]


def _override_pairs(
    overrides: Union[Mapping[EntityRef, float], Iterable[Tuple[EntityRef, float]]],
) -> Tuple[Tuple[EntityRef, float], ...]:
    items = overrides.items() if isinstance(overrides, Mapping) else overrides
    return tuple((ref, float(size)) for ref, size in items)


class FaceElement(StrEnum):
    TRIANGLE = "triangle"
    QUAD = "quad"


class VolumeElement(StrEnum):
    TETRA = "tetra"
    HEXA = "hexa"


@dataclass(frozen=True)
class IngestPolicy:
    """
    Controls how a raw boundary graph is validated.

    best_effort: skip defective entities (recording a diagnostic each) instead
        of aborting the whole model.
    tolerance: absolute distance used for endpoint matching and zero-length
        detection. ``None`` derives it from the bounding-box diagonal.
    """
    best_effort: bool = True
    tolerance: Optional[float] = None

    def resolve_tolerance(self, diagonal: float) -> float:
        if self.tolerance is not None:
            return self.tolerance
        return max(diagonal * DEFAULT_INGEST_RELATIVE_TOLERANCE, DEFAULT_EPSILON)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> IngestPolicy:
        return IngestPolicy(
            best_effort=bool(data.get("best_effort", True)),
            tolerance=data.get("tolerance"),
        )


@dataclass(frozen=True)
class MeshingPolicy:
    """
    The sizing / tolerance policy of one discretization run.

    position_tolerance: single distance used by every position comparison of
        the run. ``None`` derives it from the geometry.
    target_element_size: global element length.
    size_overrides: per-entity element length as (entity id or name, size)
        pairs; a mapping is accepted and stored as pairs.
    strict: abort on the first degenerate entity or meshing failure.
    deterministic: commit results in entity-id order so that node and element
        ids are reproducible across runs.
    workers: thread count for face and solid meshing (1 = sequential).
    """
    target_element_size: float = 1.0
    position_tolerance: Optional[float] = None
    size_overrides: Tuple[Tuple[EntityRef, float], ...] = ()
    strict: bool = False
    deterministic: bool = False
    workers: int = field(default_factory=lambda: min(8, os.cpu_count() or 1))
    face_element: FaceElement = FaceElement.TRIANGLE
    volume_element: VolumeElement = VolumeElement.TETRA
    relative_tolerance: float = DEFAULT_RELATIVE_TOLERANCE

    def __post_init__(self) -> None:
        object.__setattr__(self, "size_overrides", _override_pairs(self.size_overrides))
        if self.target_element_size <= 0.0:
            raise ValueError(f"target_element_size must be positive, got {self.target_element_size}")
        if self.position_tolerance is not None and self.position_tolerance <= 0.0:
            raise ValueError(f"position_tolerance must be positive, got {self.position_tolerance}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        for key, size in self.size_overrides:
            if size <= 0.0:
                raise ValueError(f"size override for {key!r} must be positive, got {size}")

    def resolve_tolerance(self, diagonal: float) -> float:
        """Tolerance of the run for a model with the given bounding-box diagonal."""
        if self.position_tolerance is not None:
            return self.position_tolerance
        return max(diagonal * self.relative_tolerance, DEFAULT_EPSILON)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_element_size": self.target_element_size,
            "position_tolerance": self.position_tolerance,
            "size_overrides": {str(k): v for k, v in self.size_overrides},
            "strict": self.strict,
            "deterministic": self.deterministic,
            "workers": self.workers,
            "face_element": self.face_element.value,
            "volume_element": self.volume_element.value,
            "relative_tolerance": self.relative_tolerance,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> MeshingPolicy:
        overrides: Dict[EntityRef, float] = {}
        for key, value in data.get("size_overrides", {}).items():
            # JSON turns integer ids into strings
            ref: EntityRef = int(key) if isinstance(key, str) and key.isdigit() else key
            overrides[ref] = float(value)

        defaults = MeshingPolicy()
        return MeshingPolicy(
            target_element_size=float(data.get("target_element_size", defaults.target_element_size)),
            position_tolerance=data.get("position_tolerance"),
            size_overrides=overrides,
            strict=bool(data.get("strict", False)),
            deterministic=bool(data.get("deterministic", False)),
            workers=int(data.get("workers", defaults.workers)),
            face_element=FaceElement(data.get("face_element", FaceElement.TRIANGLE)),
            volume_element=VolumeElement(data.get("volume_element", VolumeElement.TETRA)),
            relative_tolerance=float(data.get("relative_tolerance", DEFAULT_RELATIVE_TOLERANCE)),
        )


def load_policy(filepath: str) -> MeshingPolicy:
    """Read a MeshingPolicy from a JSON file."""
    logger.info(f"Loading meshing policy from: {filepath}")
    with open(filepath, "r", encoding="utf-8") as f:
        data = json.load(f)
    return MeshingPolicy.from_dict(data)


def save_policy(policy: MeshingPolicy, filepath: str) -> None:
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(policy.to_dict(), f, indent=2)
    logger.info(f"Meshing policy saved to: {filepath}")

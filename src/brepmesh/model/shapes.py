"""Predefined Shapes (Catalog) - raw boundary graphs of common solids and plates."""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np


# ------------------------------------------------------------------------------
# Enums
# ------------------------------------------------------------------------------
class ShapeKind(StrEnum):
    BOX = "box"
    CYLINDER = "cylinder"
    PLATE = "plate"


# Box corners are indexed by bits (x, y, z): corner k sits at
# (x[k & 1], y[(k >> 1) & 1], z[(k >> 2) & 1]).
_BOX_FACES: Dict[str, Tuple[int, int, int, int]] = {
    # Corner order is counter-clockwise seen from outside
    "xmin": (0, 4, 6, 2),
    "xmax": (1, 3, 7, 5),
    "ymin": (0, 1, 5, 4),
    "ymax": (2, 6, 7, 3),
    "zmin": (0, 2, 3, 1),
    "zmax": (4, 5, 7, 6),
}


def _line(start: Sequence[float], end: Sequence[float]) -> Dict[str, Any]:
    return {"type": "line", "start": [float(c) for c in start], "end": [float(c) for c in end]}


def _plane(origin: np.ndarray, u_axis: np.ndarray, v_axis: np.ndarray) -> Dict[str, Any]:
    return {"type": "plane", "origin": origin.tolist(), "u_axis": u_axis.tolist(), "v_axis": v_axis.tolist()}


def _circle(center: Sequence[float], radius: float, normal: Sequence[float] = (0.0, 0.0, 1.0)) -> Dict[str, Any]:
    return {
        "type": "arc",
        "center": [float(c) for c in center],
        "radius": float(radius),
        "x_axis": [1.0, 0.0, 0.0],
        "normal": [float(c) for c in normal],
        "domain": [0.0, 2.0 * math.pi],
    }


def box_graph(
    size: Sequence[float] = (1.0, 1.0, 1.0),
    origin: Sequence[float] = (0.0, 0.0, 0.0),
    name: str = "block",
) -> Dict[str, Any]:
    """
    Axis-aligned box with faces named ``xmin``, ``xmax``, ``ymin``, ``ymax``,
    ``zmin``, ``zmax``. Vertices are ``v0``..``v7`` (bit-indexed corners) and
    edges ``e<a>_<b>`` for corners a < b.
    """
    o = np.asarray(origin, dtype=float)
    s = np.asarray(size, dtype=float)
    corners = [
        o + s * np.array([k & 1, (k >> 1) & 1, (k >> 2) & 1], dtype=float)
        for k in range(8)
    ]

    edges: Dict[Tuple[int, int], Dict[str, Any]] = {}
    for a in range(8):
        for bit in (1, 2, 4):
            b = a | bit
            if b != a:
                edges[(a, b)] = {
                    "id": f"e{a}_{b}",
                    "vertices": [f"v{a}", f"v{b}"],
                    "curve": _line(corners[a], corners[b]),
                }

    faces: List[Dict[str, Any]] = []
    for face_name, ring in _BOX_FACES.items():
        loop = []
        for i in range(4):
            a, b = ring[i], ring[(i + 1) % 4]
            key = (min(a, b), max(a, b))
            loop.append({"edge": edges[key]["id"], "reversed": a > b})
        c0, c1, _, c3 = (corners[k] for k in ring)
        faces.append({
            "id": face_name,
            "surface": _plane(c0, c1 - c0, c3 - c0),
            "sense": True,
            "loops": [loop],
        })

    return {
        "vertices": [{"id": f"v{k}", "position": corners[k].tolist()} for k in range(8)],
        "edges": list(edges.values()),
        "faces": faces,
        "solids": [{"id": name, "faces": list(_BOX_FACES)}],
    }


def cylinder_graph(
    radius: float = 1.0,
    height: float = 1.0,
    origin: Sequence[float] = (0.0, 0.0, 0.0),
    name: str = "cylinder",
) -> Dict[str, Any]:
    """
    Right circular cylinder along +z with faces ``bottom``, ``top`` and
    ``lateral``. The lateral face is periodic; its seam edge ``seam`` appears
    twice in its loop.
    """
    o = np.asarray(origin, dtype=float)
    top_center = o + np.array([0.0, 0.0, height])
    vb = o + np.array([radius, 0.0, 0.0])
    vt = top_center + np.array([radius, 0.0, 0.0])

    return {
        "vertices": [
            {"id": "vb", "position": vb.tolist()},
            {"id": "vt", "position": vt.tolist()},
        ],
        "edges": [
            {"id": "bottom_circle", "vertices": ["vb", "vb"], "curve": _circle(o, radius)},
            {"id": "top_circle", "vertices": ["vt", "vt"], "curve": _circle(top_center, radius)},
            {"id": "seam", "vertices": ["vb", "vt"], "curve": _line(vb, vt)},
        ],
        "faces": [
            {
                "id": "bottom",
                "surface": {"type": "plane", "origin": o.tolist(), "normal": [0.0, 0.0, -1.0]},
                "sense": True,
                "loops": [[{"edge": "bottom_circle", "reversed": True}]],
            },
            {
                "id": "top",
                "surface": {"type": "plane", "origin": top_center.tolist(), "normal": [0.0, 0.0, 1.0]},
                "sense": True,
                "loops": [[{"edge": "top_circle", "reversed": False}]],
            },
            {
                "id": "lateral",
                "surface": {
                    "type": "cylinder",
                    "origin": o.tolist(),
                    "axis": [0.0, 0.0, 1.0],
                    "radius": float(radius),
                    "ref_dir": [1.0, 0.0, 0.0],
                },
                "sense": True,
                "loops": [[
                    {"edge": "bottom_circle", "reversed": False},
                    {"edge": "seam", "reversed": False},
                    {"edge": "top_circle", "reversed": True},
                    {"edge": "seam", "reversed": True},
                ]],
            },
        ],
        "solids": [{"id": name, "faces": ["bottom", "top", "lateral"]}],
    }


def plate_graph(
    width: float = 1.0,
    height: float = 1.0,
    hole_radius: Optional[float] = None,
    origin: Sequence[float] = (0.0, 0.0, 0.0),
    name: str = "plate",
) -> Dict[str, Any]:
    """
    Rectangular face in the z = origin[2] plane with edges ``bottom``,
    ``right``, ``top``, ``left``. With ``hole_radius`` a centred circular
    hole (edge ``hole``) becomes the inner loop.
    """
    o = np.asarray(origin, dtype=float)
    pts = [o, o + [width, 0.0, 0.0], o + [width, height, 0.0], o + [0.0, height, 0.0]]
    edge_names = ["bottom", "right", "top", "left"]

    vertices = [{"id": f"p{k}", "position": p.tolist()} for k, p in enumerate(pts)]
    edges = [
        {"id": edge_names[k], "vertices": [f"p{k}", f"p{(k + 1) % 4}"], "curve": _line(pts[k], pts[(k + 1) % 4])}
        for k in range(4)
    ]
    loops = [[{"edge": n, "reversed": False} for n in edge_names]]

    if hole_radius is not None:
        if hole_radius <= 0.0 or 2.0 * hole_radius >= min(width, height):
            raise ValueError(f"Hole radius {hole_radius} does not fit a {width} x {height} plate")
        center = o + [0.5 * width, 0.5 * height, 0.0]
        vertices.append({"id": "ph", "position": (center + [hole_radius, 0.0, 0.0]).tolist()})
        edges.append({"id": "hole", "vertices": ["ph", "ph"], "curve": _circle(center, hole_radius)})
        # Inner loops run clockwise
        loops.append([{"edge": "hole", "reversed": True}])

    return {
        "vertices": vertices,
        "edges": edges,
        "faces": [{
            "id": name,
            "surface": _plane(o, np.array([1.0, 0.0, 0.0]), np.array([0.0, 1.0, 0.0])),
            "sense": True,
            "loops": loops,
        }],
        "solids": [],
    }


@dataclass(frozen=True)
class ShapeSpec:
    """A catalog entry; ``dimensions`` are interpreted per ``kind``."""
    kind: ShapeKind
    dimensions: Tuple[float, ...]
    name: Optional[str] = None

    def graph(self) -> Dict[str, Any]:
        match self.kind:
            case ShapeKind.BOX:
                return box_graph(size=self.dimensions, name=self.name or "block")
            case ShapeKind.CYLINDER:
                radius, height = self.dimensions
                return cylinder_graph(radius=radius, height=height, name=self.name or "cylinder")
            case ShapeKind.PLATE:
                width, height, *rest = self.dimensions
                return plate_graph(width, height, hole_radius=rest[0] if rest else None, name=self.name or "plate")
            case _:
                raise ValueError(f"Unknown shape kind: {self.kind!r}")

"""
Face Meshing
============
Meshes one face in the isometric parameter plane of its surface, with the
boundary nodes fixed in advance by the edge discretization.

Why is this file needed?
------------------------
1. Conformity: the boundary of the face mesh is exactly the given loop
   nodes; only interior nodes are created here.
2. Robustness: an unstructured Delaunay mesh is verified against the
   boundary; a failed check falls back to ear clipping, and only then to
   MeshingFailure.

Everything here is pure computation on numpy arrays; node creation and
bookkeeping stay in the Discretizer, so faces can be meshed on worker
threads.

Slots
-----
Boundary points are addressed by *slot*: the position in the concatenated
loops. A seam node of a periodic face occupies two slots (one per side of
the seam) that map to the same node id. Interior points get slots
``n_boundary + k``.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING

import numpy as np
from matplotlib.path import Path
from scipy.spatial import Delaunay, QhullError

from brepmesh.config import DEFAULT_EPSILON, FaceElement
from brepmesh.errors import MeshingFailure
from brepmesh.mesh.elements import ElementType
from brepmesh.model.diagnostics import ReasonCode

if TYPE_CHECKING:
    import numpy.typing as npt
    from brepmesh.model.geometry_primitives import Surface

logger = logging.getLogger(__name__)

# Interior points closer than this (times the element size) to the boundary are dropped
BOUNDARY_CLEARANCE = 0.6
# Lattice jitter amplitude (times the element size)
LATTICE_JITTER = 0.1
# Relative mismatch allowed between the meshed area and the region area
AREA_RELATIVE_TOLERANCE = 1e-6


@dataclass
class FaceMeshInput:
    """
    loops: one (n_i, 3) array of boundary points per loop, outer loop first,
        consecutive points joined by boundary segments (closing segment implied).
    sides: for a single-loop face, the slot at which each edge use starts;
        used to detect four-sided faces for structured quads.
    """
    face_id: int
    surface: Surface
    sense: bool
    loops: List[npt.NDArray[np.float64]]
    size: float
    tolerance: float
    element: FaceElement = FaceElement.TRIANGLE
    sides: Optional[Sequence[int]] = None
    seed: int = 0


@dataclass
class FaceMeshResult:
    face_id: int
    element_type: ElementType
    interior_points: npt.NDArray[np.float64]
    cells: npt.NDArray[np.int64]
    n_boundary: int
    method: str
    grid: Optional[npt.NDArray[np.int64]] = None
    degenerate: bool = False
    message: str = ""
    uv: Optional[npt.NDArray[np.float64]] = field(default=None, repr=False)


# ------------------------------------------------------------------------------
# Parameter-space helpers
# ------------------------------------------------------------------------------
def signed_area(uv: npt.NDArray[np.float64]) -> float:
    """Shoelace area of a closed polygon; positive when counter-clockwise."""
    x, y = uv[:, 0], uv[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))


def triangle_signed_areas(uv: npt.NDArray[np.float64], tris: npt.NDArray[np.int64]) -> npt.NDArray[np.float64]:
    a, b, c = uv[tris[:, 0]], uv[tris[:, 1]], uv[tris[:, 2]]
    return 0.5 * ((b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0]))


def loop_parameters(surface: Surface, loops: List[npt.NDArray[np.float64]]) -> List[npt.NDArray[np.float64]]:
    """
    (u, v) of every loop, continuous along each loop. Inner loops of a
    periodic surface are shifted by whole periods next to the outer loop.
    """
    uv_loops = [surface.parameters_along(loop) for loop in loops]
    period = surface.u_period
    if period and len(uv_loops) > 1:
        center = uv_loops[0][:, 0].mean()
        for k in range(1, len(uv_loops)):
            shift = period * round((center - uv_loops[k][:, 0].mean()) / period)
            uv_loops[k] = uv_loops[k] + np.array([shift, 0.0])
    return uv_loops


def segment_distances(points: npt.NDArray[np.float64], segments: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """Distance from each 2D point to the nearest of the (s, 2, 2) segments."""
    if len(points) == 0 or len(segments) == 0:
        return np.full(len(points), np.inf)
    a = segments[:, 0][None, :, :]
    d = (segments[:, 1] - segments[:, 0])[None, :, :]
    best = np.full(len(points), np.inf)
    # Chunked to bound memory on large faces
    for start in range(0, len(points), 2048):
        p = points[start:start + 2048][:, None, :]
        dd = np.einsum("ijk,ijk->ij", d, d)
        t = np.einsum("ijk,ijk->ij", p - a, d) / np.where(dd > 0.0, dd, 1.0)
        t = np.clip(t, 0.0, 1.0)
        closest = a + t[:, :, None] * d
        best[start:start + 2048] = np.linalg.norm(p - closest, axis=2).min(axis=1)
    return best


def loop_segments(uv_loops: List[npt.NDArray[np.float64]]) -> npt.NDArray[np.float64]:
    return np.concatenate([np.stack((uv, np.roll(uv, -1, axis=0)), axis=1) for uv in uv_loops])


def region_contains(uv_loops: List[npt.NDArray[np.float64]], points: npt.NDArray[np.float64]) -> npt.NDArray[np.bool_]:
    """Points inside the outer loop and outside every inner loop."""
    inside = Path(uv_loops[0]).contains_points(points)
    for hole in uv_loops[1:]:
        inside &= ~Path(hole).contains_points(points)
    return inside


def triangular_lattice(
    lower: npt.NDArray[np.float64],
    upper: npt.NDArray[np.float64],
    size: float,
    rng: np.random.Generator,
) -> npt.NDArray[np.float64]:
    """Jittered equilateral lattice of spacing ``size`` centred on the box."""
    center = 0.5 * (lower + upper)
    row_height = size * math.sqrt(3.0) / 2.0
    n_cols = int(math.ceil(0.5 * (upper[0] - lower[0]) / size)) + 1
    n_rows = int(math.ceil(0.5 * (upper[1] - lower[1]) / row_height)) + 1

    rows, cols = np.meshgrid(np.arange(-n_rows, n_rows + 1), np.arange(-n_cols, n_cols + 1), indexing="ij")
    u = center[0] + size * (cols + 0.5 * (rows % 2))
    v = center[1] + row_height * rows
    pts = np.column_stack((u.ravel(), v.ravel()))
    pts += rng.uniform(-LATTICE_JITTER, LATTICE_JITTER, pts.shape) * size
    keep = np.all((pts >= lower) & (pts <= upper), axis=1)
    return pts[keep]


# ------------------------------------------------------------------------------
# Triangulation
# ------------------------------------------------------------------------------
def boundary_edges(uv_loops: List[npt.NDArray[np.float64]]) -> List[Tuple[int, int]]:
    edges = []
    offset = 0
    for uv in uv_loops:
        n = len(uv)
        edges.extend((offset + i, offset + (i + 1) % n) for i in range(n))
        offset += n
    return edges


def covers_boundary(tris: npt.NDArray[np.int64], uv: npt.NDArray[np.float64],
                    segments: List[Tuple[int, int]], region_area: float) -> bool:
    """Every boundary segment is a side of exactly one triangle and the areas agree."""
    if len(tris) == 0:
        return False
    sides: dict = {}
    for tri in tris:
        for a, b in ((tri[0], tri[1]), (tri[1], tri[2]), (tri[2], tri[0])):
            key = (min(a, b), max(a, b))
            sides[key] = sides.get(key, 0) + 1
    for a, b in segments:
        if sides.get((min(a, b), max(a, b)), 0) != 1:
            return False
    area = float(np.abs(triangle_signed_areas(uv, tris)).sum())
    return abs(area - region_area) <= AREA_RELATIVE_TOLERANCE * max(region_area, DEFAULT_EPSILON)


def delaunay_triangles(uv: npt.NDArray[np.float64], uv_loops: List[npt.NDArray[np.float64]],
                       min_area: float) -> npt.NDArray[np.int64]:
    """Delaunay triangles of ``uv`` whose centroid lies in the face region."""
    try:
        tri = Delaunay(uv)
    except QhullError as e:
        logger.debug(f"Qhull failed: {e}")
        return np.empty((0, 3), dtype=np.int64)
    simplices = tri.simplices.astype(np.int64)
    areas = triangle_signed_areas(uv, simplices)
    simplices = simplices[np.abs(areas) > min_area]
    if len(simplices) == 0:
        return simplices
    centroids = uv[simplices].mean(axis=1)
    return simplices[region_contains(uv_loops, centroids)]


def _point_in_triangle(p: npt.NDArray[np.float64], a, b, c) -> bool:
    d1 = (p[0] - b[0]) * (a[1] - b[1]) - (a[0] - b[0]) * (p[1] - b[1])
    d2 = (p[0] - c[0]) * (b[1] - c[1]) - (b[0] - c[0]) * (p[1] - c[1])
    d3 = (p[0] - a[0]) * (c[1] - a[1]) - (c[0] - a[0]) * (p[1] - a[1])
    has_neg = (d1 < 0) or (d2 < 0) or (d3 < 0)
    has_pos = (d1 > 0) or (d2 > 0) or (d3 > 0)
    return not (has_neg and has_pos)


def ear_clip(uv: npt.NDArray[np.float64]) -> npt.NDArray[np.int64]:
    """Triangulate a simple polygon (no holes). Empty result if no ear is found."""
    indices = list(range(len(uv)))
    if signed_area(uv) < 0.0:
        indices.reverse()
    triangles: List[Tuple[int, int, int]] = []

    guard = 0
    while len(indices) > 3:
        n = len(indices)
        clipped = False
        for k in range(n):
            i0, i1, i2 = indices[(k - 1) % n], indices[k], indices[(k + 1) % n]
            a, b, c = uv[i0], uv[i1], uv[i2]
            cross = (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])
            if cross <= 0.0:
                continue
            if any(
                _point_in_triangle(uv[j], a, b, c)
                for j in indices if j not in (i0, i1, i2)
            ):
                continue
            triangles.append((i0, i1, i2))
            del indices[k]
            clipped = True
            break
        guard += 1
        if not clipped or guard > len(uv) * len(uv):
            return np.empty((0, 3), dtype=np.int64)
    triangles.append(tuple(indices))
    return np.array(triangles, dtype=np.int64)


# ------------------------------------------------------------------------------
# Structured quads
# ------------------------------------------------------------------------------
def side_slots(n_slots: int, starts: Sequence[int]) -> List[List[int]]:
    """Slot chains of the four sides; each chain includes both corner slots."""
    chains = []
    for k in range(4):
        a, b = starts[k], starts[(k + 1) % 4]
        length = (b - a) % n_slots
        chains.append([(a + i) % n_slots for i in range(length + 1)])
    return chains


def transfinite_grid(uv: npt.NDArray[np.float64], chains: List[List[int]]
                     ) -> Tuple[npt.NDArray[np.int64], npt.NDArray[np.float64]]:
    """
    Coons patch over four boundary chains.

    Returns a slot grid of shape (n + 1, m + 1), boundary entries filled with
    boundary slots and interior entries with ``-(k + 1)`` for interior point
    ``k``, together with the interior (u, v) points.
    """
    bottom = chains[0]
    right = chains[1]
    top = chains[2][::-1]
    left = chains[3][::-1]
    n, m = len(bottom) - 1, len(right) - 1

    grid = np.zeros((n + 1, m + 1), dtype=np.int64)
    grid[:, 0] = bottom
    grid[:, m] = top
    grid[0, :] = left
    grid[n, :] = right

    s = np.linspace(0.0, 1.0, n + 1)
    t = np.linspace(0.0, 1.0, m + 1)
    B, T = uv[bottom], uv[top]
    L, R = uv[left], uv[right]
    p00, p10, p01, p11 = uv[bottom[0]], uv[bottom[-1]], uv[top[0]], uv[top[-1]]

    interior = []
    for i in range(1, n):
        for j in range(1, m):
            si, tj = s[i], t[j]
            p = ((1 - tj) * B[i] + tj * T[i] + (1 - si) * L[j] + si * R[j]
                 - ((1 - si) * (1 - tj) * p00 + si * (1 - tj) * p10 + (1 - si) * tj * p01 + si * tj * p11))
            grid[i, j] = -(len(interior) + 1)
            interior.append(p)
    return grid, np.array(interior, dtype=np.float64).reshape(-1, 2)


def structured_sides(n_slots: int, starts: Optional[Sequence[int]]) -> Optional[List[List[int]]]:
    """The four side chains if opposite sides have matching segment counts."""
    if starts is None or len(starts) != 4:
        return None
    chains = side_slots(n_slots, starts)
    counts = [len(c) - 1 for c in chains]
    if min(counts) < 1 or counts[0] != counts[2] or counts[1] != counts[3]:
        return None
    return chains


# ------------------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------------------
def _oriented(cells: npt.NDArray[np.int64], uv: npt.NDArray[np.float64], sense: bool) -> npt.NDArray[np.int64]:
    """Counter-clockwise in (u, v), reversed when the face opposes its surface."""
    cells = cells.copy()
    if len(cells):
        areas = triangle_signed_areas(uv, cells[:, :3])
        flip = areas < 0.0
        cells[flip] = cells[flip][:, ::-1]
        if not sense:
            cells = cells[:, ::-1]
    return np.ascontiguousarray(cells)


def mesh_face(inp: FaceMeshInput) -> FaceMeshResult:
    """
    Mesh one face. Raises MeshingFailure when no valid mesh can be built;
    degenerate faces return an empty result flagged ``degenerate``.
    """
    uv_loops = loop_parameters(inp.surface, inp.loops)
    uv_boundary = np.concatenate(uv_loops)
    n_boundary = len(uv_boundary)
    h = inp.size

    outer_area = abs(signed_area(uv_loops[0]))
    region_area = outer_area - sum(abs(signed_area(loop)) for loop in uv_loops[1:])
    perimeter = float(np.linalg.norm(np.diff(np.vstack((uv_loops[0], uv_loops[0][:1])), axis=0), axis=1).sum())
    if len(uv_loops[0]) < 3 or region_area <= inp.tolerance * max(perimeter, DEFAULT_EPSILON):
        return FaceMeshResult(
            face_id=inp.face_id,
            element_type=ElementType.TRIANGLE,
            interior_points=np.empty((0, 3)),
            cells=np.empty((0, 3), dtype=np.int64),
            n_boundary=n_boundary,
            method="none",
            degenerate=True,
            message=f"zero area face (area {region_area:g})",
        )

    # Structured quads on four-sided faces
    if inp.element == FaceElement.QUAD and len(uv_loops) == 1:
        chains = structured_sides(n_boundary, inp.sides)
        if chains is not None:
            grid, interior_uv = transfinite_grid(uv_boundary, chains)
            slot_grid = np.where(grid < 0, n_boundary - grid - 1, grid)
            cells = np.array([
                (slot_grid[i, j], slot_grid[i + 1, j], slot_grid[i + 1, j + 1], slot_grid[i, j + 1])
                for i in range(grid.shape[0] - 1)
                for j in range(grid.shape[1] - 1)
            ], dtype=np.int64)
            uv_all = np.vstack((uv_boundary, interior_uv))
            oriented = _oriented(cells, uv_all, inp.sense)
            logger.debug(f"Face {inp.face_id}: transfinite grid {grid.shape[0] - 1} x {grid.shape[1] - 1}.")
            return FaceMeshResult(
                face_id=inp.face_id,
                element_type=ElementType.QUAD,
                interior_points=inp.surface.evaluate(interior_uv) if len(interior_uv) else np.empty((0, 3)),
                cells=oriented,
                n_boundary=n_boundary,
                method="transfinite",
                grid=slot_grid,
                uv=uv_all,
            )
        logger.debug(f"Face {inp.face_id} is not a structured four-sided face; using triangles.")

    rng = np.random.default_rng(inp.seed)
    lower = uv_boundary.min(axis=0)
    upper = uv_boundary.max(axis=0)
    candidates = triangular_lattice(lower, upper, h, rng)
    if len(candidates):
        candidates = candidates[region_contains(uv_loops, candidates)]
        clearance = segment_distances(candidates, loop_segments(uv_loops))
        candidates = candidates[clearance >= BOUNDARY_CLEARANCE * h]

    segments = boundary_edges(uv_loops)
    min_area = DEFAULT_EPSILON * h * h

    uv_all = np.vstack((uv_boundary, candidates)) if len(candidates) else uv_boundary
    tris = delaunay_triangles(uv_all, uv_loops, min_area)
    method = "delaunay"
    if not covers_boundary(tris, uv_all, segments, region_area):
        logger.info(f"Face {inp.face_id}: Delaunay mesh does not recover the boundary; trying fallback.")
        if len(uv_loops) != 1:
            raise MeshingFailure(
                inp.face_id, ReasonCode.TRIANGULATION_FAILED.value,
                "boundary not recovered and ear clipping does not handle inner loops",
            )
        candidates = np.empty((0, 2))
        uv_all = uv_boundary
        tris = ear_clip(uv_boundary)
        method = "ear_clipping"
        if not covers_boundary(tris, uv_all, segments, region_area):
            raise MeshingFailure(inp.face_id, ReasonCode.TRIANGULATION_FAILED.value, "ear clipping failed")

    logger.debug(f"Face {inp.face_id}: {len(tris)} triangles ({method}, {len(candidates)} interior points).")
    return FaceMeshResult(
        face_id=inp.face_id,
        element_type=ElementType.TRIANGLE,
        interior_points=inp.surface.evaluate(candidates) if len(candidates) else np.empty((0, 3)),
        cells=_oriented(tris, uv_all, inp.sense),
        n_boundary=n_boundary,
        method=method,
        uv=uv_all,
    )

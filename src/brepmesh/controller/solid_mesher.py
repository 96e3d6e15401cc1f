"""
Solid Meshing
=============
Fills the volume bounded by already meshed faces.

* Tetrahedra: Delaunay tetrahedralization of the boundary nodes plus a
  lattice of interior points, accepted only if its boundary facets are
  exactly the face triangles; otherwise a star from an interior kernel
  point; otherwise MeshingFailure.
* Hexahedra: a transfinite grid for six-faced blocks whose faces carry
  structured quad grids.

Cells refer to existing nodes by their global id and to the new interior
points by ``-(k + 1)``.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict, deque
from dataclasses import dataclass
from itertools import product
from typing import Dict, List, Optional, Sequence, Set, Tuple, TYPE_CHECKING

import numpy as np
from scipy.spatial import Delaunay, QhullError, cKDTree

from brepmesh.config import DEFAULT_EPSILON
from brepmesh.errors import MeshingFailure
from brepmesh.mesh.elements import ElementType, hexa_volumes, tetra_volumes
from brepmesh.model.diagnostics import ReasonCode

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)

BOUNDARY_CLEARANCE = 0.6
LATTICE_JITTER = 0.05
VOLUME_RELATIVE_TOLERANCE = 1e-6
MAX_KERNEL_CANDIDATES = 64


@dataclass
class SolidMeshInput:
    """
    positions: node positions indexed by global node id (at least every id
        referenced by ``boundary``).
    boundary: (t, 3) face triangles of the shell, global node ids.
    face_grids: structured node-id grids of the six faces (hexa meshing).
    """
    solid_id: int
    positions: npt.NDArray[np.float64]
    boundary: npt.NDArray[np.int64]
    size: float
    tolerance: float
    seed: int = 0
    face_grids: Optional[List[npt.NDArray[np.int64]]] = None


@dataclass
class SolidMeshResult:
    solid_id: int
    element_type: ElementType
    interior_points: npt.NDArray[np.float64]
    cells: npt.NDArray[np.int64]
    method: str


# ------------------------------------------------------------------------------
# Shell helpers
# ------------------------------------------------------------------------------
def _directed_edges(tri: Sequence[int]) -> List[Tuple[int, int]]:
    return [(tri[0], tri[1]), (tri[1], tri[2]), (tri[2], tri[0])]


def shell_components(tris: npt.NDArray[np.int64]) -> List[List[int]]:
    """Connected components of the triangle shell, as lists of triangle rows."""
    by_edge: Dict[Tuple[int, int], List[int]] = defaultdict(list)
    for t, tri in enumerate(tris):
        for a, b in _directed_edges(tri):
            by_edge[(min(a, b), max(a, b))].append(t)
    seen = np.zeros(len(tris), dtype=bool)
    components = []
    for start in range(len(tris)):
        if seen[start]:
            continue
        seen[start] = True
        queue, comp = deque([start]), []
        while queue:
            t = queue.popleft()
            comp.append(t)
            for a, b in _directed_edges(tris[t]):
                for other in by_edge[(min(a, b), max(a, b))]:
                    if not seen[other]:
                        seen[other] = True
                        queue.append(other)
        components.append(comp)
    return components


def orient_shell(solid_id: int, tris: npt.NDArray[np.int64], positions: npt.NDArray[np.float64]) -> npt.NDArray[np.int64]:
    """
    Consistently orient a closed triangle shell with outward normals.

    Neighbouring triangles must traverse their shared edge in opposite
    directions; each component is then flipped so that it encloses positive
    volume, or negative volume when it bounds a cavity inside another one.
    """
    tris = np.array(tris, dtype=np.int64).reshape(-1, 3)
    by_edge: Dict[Tuple[int, int], List[int]] = defaultdict(list)
    for t, tri in enumerate(tris):
        for a, b in _directed_edges(tri):
            by_edge[(min(a, b), max(a, b))].append(t)
    bad = [e for e, ts in by_edge.items() if len(ts) != 2]
    if bad:
        raise MeshingFailure(
            solid_id, ReasonCode.TETRAHEDRALIZATION_FAILED.value,
            f"face meshes do not form a closed shell ({len(bad)} unmatched mesh edges)",
        )

    components = shell_components(tris)
    for comp in components:
        fixed = {comp[0]}
        queue = deque([comp[0]])
        while queue:
            t = queue.popleft()
            for a, b in _directed_edges(tris[t]):
                for other in by_edge[(min(a, b), max(a, b))]:
                    if other in fixed:
                        continue
                    if (a, b) in _directed_edges(tris[other]):
                        tris[other] = tris[other][::-1]
                    fixed.add(other)
                    queue.append(other)

    for k, comp in enumerate(components):
        volume = shell_volume(positions, tris[comp])
        probe = positions[tris[comp[0], 0]][None, :]
        inside_other = any(
            abs(winding_numbers(probe, positions[tris[other]])[0]) > 0.5
            for j, other in enumerate(components) if j != k
        )
        want_positive = not inside_other
        if (volume > 0.0) != want_positive:
            tris[comp] = tris[comp][:, ::-1]
    return tris


def shell_volume(positions: npt.NDArray[np.float64], tris: npt.NDArray[np.int64]) -> float:
    p = positions[tris]
    return float(np.einsum("ij,ij->i", p[:, 0], np.cross(p[:, 1], p[:, 2])).sum() / 6.0)


def winding_numbers(points: npt.NDArray[np.float64], tri_points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """Generalized winding number of each point w.r.t. (t, 3, 3) triangles."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    out = np.zeros(len(points))
    for start in range(0, len(points), 512):
        p = points[start:start + 512][:, None, None, :]
        d = tri_points[None, :, :, :] - p
        a, b, c = d[:, :, 0], d[:, :, 1], d[:, :, 2]
        la, lb, lc = (np.linalg.norm(x, axis=2) for x in (a, b, c))
        num = np.einsum("ijk,ijk->ij", a, np.cross(b, c))
        den = (la * lb * lc
               + np.einsum("ijk,ijk->ij", a, b) * lc
               + np.einsum("ijk,ijk->ij", b, c) * la
               + np.einsum("ijk,ijk->ij", c, a) * lb)
        out[start:start + 512] = (2.0 * np.arctan2(num, den)).sum(axis=1) / (4.0 * math.pi)
    return out


def bcc_lattice(lower: npt.NDArray[np.float64], upper: npt.NDArray[np.float64], size: float,
                rng: np.random.Generator) -> npt.NDArray[np.float64]:
    """Jittered body-centred cubic lattice of spacing ``size`` over the box."""
    center = 0.5 * (lower + upper)
    half = np.ceil(0.5 * (upper - lower) / size).astype(int) + 1
    axes = [center[k] + size * np.arange(-half[k], half[k] + 1) for k in range(3)]
    corners = np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1).reshape(-1, 3)
    pts = np.vstack((corners, corners + 0.5 * size))
    pts += rng.uniform(-LATTICE_JITTER, LATTICE_JITTER, pts.shape) * size
    keep = np.all((pts > lower) & (pts < upper), axis=1)
    return pts[keep]


def _facet_counts(tets: npt.NDArray[np.int64]) -> Dict[Tuple[int, ...], int]:
    counts: Dict[Tuple[int, ...], int] = defaultdict(int)
    for tet in tets:
        for facet in ElementType.TETRA.facets:
            counts[tuple(sorted(int(tet[i]) for i in facet))] += 1
    return counts


def _matches_shell(tets: npt.NDArray[np.int64], points: npt.NDArray[np.float64],
                   shell: npt.NDArray[np.int64], volume: float) -> bool:
    if len(tets) == 0:
        return False
    counts = _facet_counts(tets)
    if any(c > 2 for c in counts.values()):
        return False
    outer = {f for f, c in counts.items() if c == 1}
    expected = {tuple(sorted(int(i) for i in tri)) for tri in shell}
    if outer != expected:
        return False
    total = float(tetra_volumes(points, tets).sum())
    return abs(total - volume) <= VOLUME_RELATIVE_TOLERANCE * max(abs(volume), DEFAULT_EPSILON)


# ------------------------------------------------------------------------------
# Tetrahedra
# ------------------------------------------------------------------------------
def _delaunay_tets(points: npt.NDArray[np.float64], shell_points: npt.NDArray[np.float64],
                   min_volume: float) -> npt.NDArray[np.int64]:
    try:
        simplices = Delaunay(points).simplices.astype(np.int64)
    except QhullError as e:
        logger.debug(f"Qhull failed: {e}")
        return np.empty((0, 4), dtype=np.int64)
    vols = tetra_volumes(points, simplices)
    simplices = simplices[np.abs(vols) > min_volume]
    if len(simplices) == 0:
        return simplices
    inside = winding_numbers(points[simplices].mean(axis=1), shell_points) > 0.5
    simplices = simplices[inside]
    negative = tetra_volumes(points, simplices) < 0.0
    simplices[negative] = simplices[negative][:, [0, 2, 1, 3]]
    return simplices


def _star_tets(shell: npt.NDArray[np.int64], kernel_index: int) -> npt.NDArray[np.int64]:
    # Facet (0, 2, 1) of a tetra is outward, so (a, c, b, k) keeps (a, b, c) outward
    return np.column_stack((shell[:, 0], shell[:, 2], shell[:, 1], np.full(len(shell), kernel_index)))


def _best_kernel(points: npt.NDArray[np.float64], shell: npt.NDArray[np.int64],
                 candidates: npt.NDArray[np.float64]) -> Tuple[Optional[npt.NDArray[np.float64]], float]:
    best, best_min = None, -np.inf
    p = points[shell]
    a = p[:, 0]
    ac = p[:, 2] - a
    ab = p[:, 1] - a
    for k in candidates:
        vols = np.einsum("ij,ij->i", ac, np.cross(ab, k - a)) / 6.0
        worst = float(vols.min())
        if worst > best_min:
            best, best_min = k, worst
    return best, best_min


def tetrahedralize(inp: SolidMeshInput) -> SolidMeshResult:
    h = inp.size
    positions = np.asarray(inp.positions, dtype=np.float64)
    shell = orient_shell(inp.solid_id, inp.boundary, positions)
    volume = shell_volume(positions, shell)
    if volume <= inp.tolerance * h * h:
        raise MeshingFailure(inp.solid_id, ReasonCode.TETRAHEDRALIZATION_FAILED.value, "shell encloses no volume")

    boundary_nodes = np.unique(shell)
    local_of = {int(n): i for i, n in enumerate(boundary_nodes)}
    local_shell = np.vectorize(local_of.__getitem__, otypes=[np.int64])(shell)
    boundary_points = positions[boundary_nodes]
    shell_points = boundary_points[local_shell]

    rng = np.random.default_rng(inp.seed)
    lower, upper = boundary_points.min(axis=0), boundary_points.max(axis=0)
    candidates = bcc_lattice(lower, upper, h, rng)
    if len(candidates):
        candidates = candidates[winding_numbers(candidates, shell_points) > 0.5]
    if len(candidates):
        dist, _ = cKDTree(boundary_points).query(candidates)
        candidates = candidates[dist >= BOUNDARY_CLEARANCE * h]

    nb = len(boundary_nodes)
    points = np.vstack((boundary_points, candidates)) if len(candidates) else boundary_points
    tets = _delaunay_tets(points, shell_points, DEFAULT_EPSILON * h ** 3)
    method = "delaunay"
    if not _matches_shell(tets, points, local_shell, volume):
        logger.info(f"Solid {inp.solid_id}: Delaunay mesh does not match the face meshes; trying star fallback.")
        centroid = boundary_points.mean(axis=0)
        tri_centroids = shell_points.mean(axis=1)
        areas = np.linalg.norm(np.cross(shell_points[:, 1] - shell_points[:, 0],
                                        shell_points[:, 2] - shell_points[:, 0]), axis=1)
        weighted = (tri_centroids * areas[:, None]).sum(axis=0) / max(areas.sum(), DEFAULT_EPSILON)
        pool = [centroid, weighted]
        if len(candidates):
            order = np.argsort(np.linalg.norm(candidates - centroid, axis=1))[:MAX_KERNEL_CANDIDATES]
            pool.extend(candidates[order])
        kernel, worst = _best_kernel(boundary_points, local_shell, np.array(pool))
        if kernel is None or worst <= DEFAULT_EPSILON * h ** 3:
            raise MeshingFailure(
                inp.solid_id, ReasonCode.TETRAHEDRALIZATION_FAILED.value,
                "no Delaunay mesh matches the faces and the solid is not star-shaped",
            )
        candidates = kernel[None, :]
        points = np.vstack((boundary_points, candidates))
        tets = _star_tets(local_shell, nb)
        method = "star"
        if not _matches_shell(tets, points, local_shell, volume):
            raise MeshingFailure(inp.solid_id, ReasonCode.TETRAHEDRALIZATION_FAILED.value, "star fallback failed")

    cells = np.where(tets < nb, boundary_nodes[np.minimum(tets, nb - 1)], -(tets - nb + 1))
    logger.debug(f"Solid {inp.solid_id}: {len(cells)} tetrahedra ({method}, {len(candidates)} interior points).")
    return SolidMeshResult(
        solid_id=inp.solid_id,
        element_type=ElementType.TETRA,
        interior_points=candidates if len(candidates) else np.empty((0, 3)),
        cells=cells.astype(np.int64),
        method=method,
    )


# ------------------------------------------------------------------------------
# Hexahedra
# ------------------------------------------------------------------------------
def _grid_symmetries(grid: npt.NDArray[np.int64]) -> List[npt.NDArray[np.int64]]:
    out = []
    for g in (grid, grid.T):
        out.extend((g, g[::-1, :], g[:, ::-1], g[::-1, ::-1]))
    return out


def _grid_corners(grid: npt.NDArray[np.int64]) -> Set[int]:
    return {int(grid[0, 0]), int(grid[-1, 0]), int(grid[0, -1]), int(grid[-1, -1])}


def _corner_graph(grids: List[npt.NDArray[np.int64]]) -> Dict[int, Dict[int, int]]:
    """Corner node -> {adjacent corner node: segments between them}."""
    graph: Dict[int, Dict[int, int]] = defaultdict(dict)
    for g in grids:
        n, m = g.shape[0] - 1, g.shape[1] - 1
        for (a, b, count) in (
            (g[0, 0], g[-1, 0], n), (g[0, -1], g[-1, -1], n),
            (g[0, 0], g[0, -1], m), (g[-1, 0], g[-1, -1], m),
        ):
            graph[int(a)][int(b)] = count
            graph[int(b)][int(a)] = count
    return graph


def _common(graph: Dict[int, Dict[int, int]], a: int, b: int, exclude: Set[int]) -> int:
    shared = (set(graph[a]) & set(graph[b])) - exclude
    if len(shared) != 1:
        raise ValueError("corner graph is not a hexahedral block")
    return shared.pop()


def hexahedralize(inp: SolidMeshInput) -> SolidMeshResult:
    def fail(message: str) -> MeshingFailure:
        return MeshingFailure(inp.solid_id, ReasonCode.TETRAHEDRALIZATION_FAILED.value, message)

    grids = inp.face_grids or []
    if len(grids) != 6:
        raise fail(f"hexahedral meshing needs 6 structured faces, got {len(grids)}")
    graph = _corner_graph(grids)
    corners = sorted(graph)
    if len(corners) != 8 or any(len(nbrs) != 3 for nbrs in graph.values()):
        raise fail("faces do not form a hexahedral block")

    try:
        c000 = corners[0]
        c100, c010, c001 = sorted(graph[c000])
        c110 = _common(graph, c100, c010, {c000})
        c101 = _common(graph, c100, c001, {c000})
        c011 = _common(graph, c010, c001, {c000})
        c111 = _common(graph, c110, c101, {c100})
    except ValueError as e:
        raise fail(str(e))

    ni, nj, nk = graph[c000][c100], graph[c000][c010], graph[c000][c001]
    ids = np.full((ni + 1, nj + 1, nk + 1), -1, dtype=np.int64)

    # (grid slice, corners at (0,0), (end,0), (0,end), (end,end)) for every block face
    block_faces = [
        ((0, slice(None), slice(None)), (c000, c010, c001, c011)),
        ((ni, slice(None), slice(None)), (c100, c110, c101, c111)),
        ((slice(None), 0, slice(None)), (c000, c100, c001, c101)),
        ((slice(None), nj, slice(None)), (c010, c110, c011, c111)),
        ((slice(None), slice(None), 0), (c000, c100, c010, c110)),
        ((slice(None), slice(None), nk), (c001, c101, c011, c111)),
    ]
    for index, (k00, k10, k01, k11) in block_faces:
        target_shape = ids[index].shape
        source = next((g for g in grids if _grid_corners(g) == {k00, k10, k01, k11}), None)
        if source is None:
            raise fail("no face matches a side of the block")
        for g in _grid_symmetries(source):
            if (g.shape == target_shape and g[0, 0] == k00 and g[-1, 0] == k10
                    and g[0, -1] == k01 and g[-1, -1] == k11):
                ids[index] = g
                break
        else:
            raise fail("face grid does not fit the block")

    positions = np.asarray(inp.positions, dtype=np.float64)
    P = np.zeros(ids.shape + (3,))
    boundary_mask = ids >= 0
    P[boundary_mask] = positions[ids[boundary_mask]]

    # Transfinite (trilinear blending) interpolation of the interior from the six faces
    u = np.linspace(0.0, 1.0, ni + 1)
    v = np.linspace(0.0, 1.0, nj + 1)
    w = np.linspace(0.0, 1.0, nk + 1)
    interior = []
    for i, j, k in product(range(1, ni), range(1, nj), range(1, nk)):
        a, b, c = u[i], v[j], w[k]
        faces = ((1 - a) * P[0, j, k] + a * P[ni, j, k]
                 + (1 - b) * P[i, 0, k] + b * P[i, nj, k]
                 + (1 - c) * P[i, j, 0] + c * P[i, j, nk])
        edges = ((1 - a) * (1 - b) * P[0, 0, k] + (1 - a) * b * P[0, nj, k]
                 + a * (1 - b) * P[ni, 0, k] + a * b * P[ni, nj, k]
                 + (1 - a) * (1 - c) * P[0, j, 0] + (1 - a) * c * P[0, j, nk]
                 + a * (1 - c) * P[ni, j, 0] + a * c * P[ni, j, nk]
                 + (1 - b) * (1 - c) * P[i, 0, 0] + (1 - b) * c * P[i, 0, nk]
                 + b * (1 - c) * P[i, nj, 0] + b * c * P[i, nj, nk])
        vertices = sum(
            (a if di else 1 - a) * (b if dj else 1 - b) * (c if dk else 1 - c) * P[di * ni, dj * nj, dk * nk]
            for di, dj, dk in product((0, 1), repeat=3)
        )
        ids[i, j, k] = -(len(interior) + 1)
        interior.append(faces - edges + vertices)
    interior_points = np.array(interior, dtype=np.float64).reshape(-1, 3)

    cells = np.array([
        (ids[i, j, k], ids[i + 1, j, k], ids[i + 1, j + 1, k], ids[i, j + 1, k],
         ids[i, j, k + 1], ids[i + 1, j, k + 1], ids[i + 1, j + 1, k + 1], ids[i, j + 1, k + 1])
        for i, j, k in product(range(ni), range(nj), range(nk))
    ], dtype=np.int64)

    all_points = np.vstack((positions, interior_points)) if len(interior_points) else positions
    local = np.where(cells >= 0, cells, len(positions) - cells - 1)
    vols = hexa_volumes(all_points, local)
    if np.all(vols < 0.0):
        cells = cells[:, [0, 3, 2, 1, 4, 7, 6, 5]]
        vols = -vols
    if np.any(vols <= DEFAULT_EPSILON * inp.size ** 3):
        raise fail("transfinite grid produced inverted hexahedra")

    logger.debug(f"Solid {inp.solid_id}: {ni} x {nj} x {nk} hexahedra.")
    return SolidMeshResult(
        solid_id=inp.solid_id,
        element_type=ElementType.HEXA,
        interior_points=interior_points,
        cells=cells,
        method="transfinite",
    )

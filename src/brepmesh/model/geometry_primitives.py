"""
Geometric Primitives
====================
Parametric curve and surface definitions carried by B-rep edges and faces.

Curves are parametrized over ``domain = (t0, t1)``; surfaces map an
isometric parameter plane ``(u, v)`` (lengths, not normalized) onto 3D space,
so that a mesh generated in parameter space keeps its shape in 3D.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Dict, Optional, Sequence, Tuple, TYPE_CHECKING

import numpy as np

from brepmesh.config import DEFAULT_EPSILON, MIN_CLOSED_CURVE_SEGMENTS
from brepmesh.utils import as_point, unit

if TYPE_CHECKING:
    import numpy.typing as npt


def _vec(value: Any) -> npt.NDArray[np.float64]:
    return as_point(value)


def _frozen(arr: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    arr = np.array(arr, dtype=np.float64)
    arr.setflags(write=False)
    return arr


class CurveType(StrEnum):
    LINE = "line"
    ARC = "arc"


class SurfaceType(StrEnum):
    PLANE = "plane"
    CYLINDER = "cylinder"


# ------------------------------------------------------------------------------
# Curves
# ------------------------------------------------------------------------------
class Curve(ABC):
    """A parametric 3D curve over ``domain``."""
    domain: Tuple[float, float]

    @property
    @abstractmethod
    def type(self) -> CurveType:
        pass

    @abstractmethod
    def points_at(self, params: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Evaluate the curve at an array of parameters, shape (n, 3)."""
        pass

    @property
    @abstractmethod
    def length(self) -> float:
        pass

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        pass

    def point_at(self, t: float) -> npt.NDArray[np.float64]:
        return self.points_at(np.array([t], dtype=np.float64))[0]

    @property
    def start(self) -> npt.NDArray[np.float64]:
        return self.point_at(self.domain[0])

    @property
    def end(self) -> npt.NDArray[np.float64]:
        return self.point_at(self.domain[1])

    @property
    def is_closed(self) -> bool:
        return float(np.linalg.norm(self.end - self.start)) <= DEFAULT_EPSILON * max(1.0, self.length)

    def number_of_segments(self, max_length: float) -> int:
        """Segments needed so that no segment is longer than ``max_length``."""
        segments = max(1, math.ceil(self.length / max_length - 1e-9))
        if self.is_closed:
            segments = max(segments, MIN_CLOSED_CURVE_SEGMENTS)
        return segments

    def discretize(self, max_length: Optional[float] = None, segments: Optional[int] = None) -> npt.NDArray[np.float64]:
        """
        Uniform samples along the curve, endpoints included.

        Parameters are equally spaced; for lines and arcs that is also equal
        arc length.
        """
        if segments is None:
            segments = 1 if max_length is None else self.number_of_segments(max_length)
        params = np.linspace(self.domain[0], self.domain[1], segments + 1)
        return self.points_at(params)

    # ------------------------------------------------------------------
    # Point queries
    # ------------------------------------------------------------------
    @abstractmethod
    def closest_parameter(self, point: Sequence[float]) -> float:
        """Parameter of the curve point nearest to ``point``, within ``domain``."""
        pass

    def closest_point(self, point: Sequence[float]) -> npt.NDArray[np.float64]:
        return self.point_at(self.closest_parameter(point))

    def distance(self, point: Sequence[float]) -> float:
        return float(np.linalg.norm(_vec(point) - self.closest_point(point)))

    def contains(self, point: Sequence[float], tolerance: Optional[float] = None) -> bool:
        if tolerance is None:
            tolerance = DEFAULT_EPSILON * max(1.0, self.length)
        return self.distance(point) <= tolerance

    def split(self, t: float) -> Tuple[Curve, ...]:
        """
        Break the curve at parameter ``t`` into two pieces meeting at
        ``point_at(t)``. A parameter not strictly inside the domain leaves
        the curve whole.
        """
        lo, hi = sorted(self.domain)
        if not lo < t < hi:
            return (self,)
        return replace(self, domain=(self.domain[0], t)), replace(self, domain=(t, self.domain[1]))

    def split_at_point(self, point: Sequence[float], tolerance: Optional[float] = None) -> Tuple[Curve, ...]:
        if not self.contains(point, tolerance):
            return (self,)
        return self.split(self.closest_parameter(point))

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Curve:
        t = data.get("type")
        if t == CurveType.LINE:
            return LineCurve.from_dict(data)
        if t == CurveType.ARC:
            return CircularArc.from_dict(data)
        raise ValueError(f"Unknown curve type: {t!r}")


@dataclass(frozen=True, eq=False)
class LineCurve(Curve):
    """A straight segment ``start + t * (end - start)``."""
    p0: npt.NDArray[np.float64]
    p1: npt.NDArray[np.float64]
    domain: Tuple[float, float] = (0.0, 1.0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "p0", _frozen(_vec(self.p0)))
        object.__setattr__(self, "p1", _frozen(_vec(self.p1)))
        object.__setattr__(self, "domain", (float(self.domain[0]), float(self.domain[1])))

    @property
    def type(self) -> CurveType:
        return CurveType.LINE

    def points_at(self, params: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        t = np.asarray(params, dtype=np.float64).reshape(-1, 1)
        return self.p0 + t * (self.p1 - self.p0)

    @property
    def length(self) -> float:
        return float(np.linalg.norm(self.p1 - self.p0)) * abs(self.domain[1] - self.domain[0])

    def closest_parameter(self, point: Sequence[float]) -> float:
        d = self.p1 - self.p0
        len2 = float(np.dot(d, d))
        if len2 <= DEFAULT_EPSILON ** 2:
            return self.domain[0]
        t = float(np.dot(_vec(point) - self.p0, d)) / len2
        lo, hi = sorted(self.domain)
        return min(max(t, lo), hi)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "start": self.p0.tolist(),
            "end": self.p1.tolist(),
            "domain": list(self.domain),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> LineCurve:
        return LineCurve(
            p0=data["start"],
            p1=data["end"],
            domain=tuple(data.get("domain", (0.0, 1.0))),
        )


@dataclass(frozen=True, eq=False)
class CircularArc(Curve):
    """
    Circle ``center + r (cos a * x_axis + sin a * y_axis)`` over the angle
    domain ``(a0, a1)``; ``y_axis = normal x x_axis``.
    """
    center: npt.NDArray[np.float64]
    radius: float
    x_axis: npt.NDArray[np.float64]
    normal: npt.NDArray[np.float64]
    domain: Tuple[float, float] = (0.0, 2.0 * math.pi)
    y_axis: npt.NDArray[np.float64] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        normal = unit(_vec(self.normal))
        x_axis = _vec(self.x_axis)
        # Re-orthogonalize the reference direction against the normal
        x_axis = unit(x_axis - np.dot(x_axis, normal) * normal)
        object.__setattr__(self, "center", _frozen(_vec(self.center)))
        object.__setattr__(self, "normal", _frozen(normal))
        object.__setattr__(self, "x_axis", _frozen(x_axis))
        object.__setattr__(self, "y_axis", _frozen(np.cross(normal, x_axis)))
        object.__setattr__(self, "radius", float(self.radius))
        object.__setattr__(self, "domain", (float(self.domain[0]), float(self.domain[1])))
        if self.radius <= 0.0:
            raise ValueError(f"Arc radius must be positive, got {self.radius}")

    @property
    def type(self) -> CurveType:
        return CurveType.ARC

    @property
    def sweep(self) -> float:
        return self.domain[1] - self.domain[0]

    def points_at(self, params: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        a = np.asarray(params, dtype=np.float64).reshape(-1, 1)
        return self.center + self.radius * (np.cos(a) * self.x_axis + np.sin(a) * self.y_axis)

    @property
    def length(self) -> float:
        return self.radius * abs(self.sweep)

    def closest_parameter(self, point: Sequence[float]) -> float:
        p = _vec(point)
        w = p - self.center
        angle = math.atan2(float(np.dot(w, self.y_axis)), float(np.dot(w, self.x_axis)))
        lo, hi = sorted(self.domain)
        wrapped = lo + (angle - lo) % (2.0 * math.pi)
        if wrapped <= hi:
            return wrapped
        # Outside the sweep: the nearer end
        return min(self.domain, key=lambda a: float(np.linalg.norm(self.point_at(a) - p)))

    @classmethod
    def from_center_start_end(
        cls,
        center: Sequence[float],
        start: Sequence[float],
        end: Sequence[float],
        normal: Sequence[float] = (0.0, 0.0, 1.0),
        clockwise: bool = False,
    ) -> CircularArc:
        """
        Arc from ``start`` to ``end`` around ``center``.

        Counter-clockwise about ``normal`` unless ``clockwise``; coincident
        start and end give a full circle.
        """
        c, s, e = _vec(center), _vec(start), _vec(end)
        n = unit(_vec(normal))
        v_s = s - c
        v_e = e - c
        radius = 0.5 * (np.linalg.norm(v_s) + np.linalg.norm(v_e))
        x_axis = unit(v_s)
        y_axis = np.cross(n, x_axis)

        sweep = math.atan2(float(np.dot(v_e, y_axis)), float(np.dot(v_e, x_axis)))
        if clockwise and sweep > 0.0:
            sweep -= 2.0 * math.pi
        elif not clockwise and sweep < 0.0:
            sweep += 2.0 * math.pi
        if abs(sweep) <= DEFAULT_EPSILON:
            sweep = -2.0 * math.pi if clockwise else 2.0 * math.pi

        return cls(center=c, radius=radius, x_axis=x_axis, normal=n, domain=(0.0, sweep))

    @classmethod
    def from_three_points(
        cls,
        p1: Sequence[float],
        p2: Sequence[float],
        p3: Sequence[float],
    ) -> Optional[CircularArc]:
        """Arc starting at p1, passing through p2, ending at p3. None if collinear."""
        a, b, c = _vec(p1), _vec(p2), _vec(p3)
        ab = b - a
        ac = c - a
        n = np.cross(ab, ac)
        n_norm2 = float(np.dot(n, n))
        if n_norm2 <= DEFAULT_EPSILON ** 2:
            return None

        # Circumcenter of the triangle (a, b, c)
        center = a + (np.dot(ac, ac) * np.cross(n, ab) + np.dot(ab, ab) * np.cross(ac, n)) / (2.0 * n_norm2)
        return cls.from_center_start_end(center, a, c, normal=n / math.sqrt(n_norm2), clockwise=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "center": self.center.tolist(),
            "radius": self.radius,
            "x_axis": self.x_axis.tolist(),
            "normal": self.normal.tolist(),
            "domain": list(self.domain),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> CircularArc:
        if "radius" not in data:
            # center / start / end form
            return CircularArc.from_center_start_end(
                center=data["center"],
                start=data["start"],
                end=data["end"],
                normal=data.get("normal", (0.0, 0.0, 1.0)),
                clockwise=bool(data.get("clockwise", False)),
            )
        return CircularArc(
            center=data["center"],
            radius=data["radius"],
            x_axis=data.get("x_axis", (1.0, 0.0, 0.0)),
            normal=data.get("normal", (0.0, 0.0, 1.0)),
            domain=tuple(data.get("domain", (0.0, 2.0 * math.pi))),
        )


# ------------------------------------------------------------------------------
# Surfaces
# ------------------------------------------------------------------------------
class Surface(ABC):
    """A parametric surface with an isometric parameter plane."""
    domain: Optional[Tuple[Tuple[float, float], Tuple[float, float]]]

    @property
    @abstractmethod
    def type(self) -> SurfaceType:
        pass

    @abstractmethod
    def evaluate(self, uv: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Map parameters, shape (n, 2), to points, shape (n, 3)."""
        pass

    @abstractmethod
    def parameters(self, points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Inverse map of points lying on the surface, shape (n, 2)."""
        pass

    @abstractmethod
    def normals(self, uv: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        pass

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        pass

    @property
    def u_period(self) -> Optional[float]:
        """Period of the u parameter for closed surfaces, None otherwise."""
        return None

    def parameters_along(self, points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Parameters of an ordered point chain, continuous across any seam."""
        return self.parameters(points)

    def within_domain(self, uv: npt.NDArray[np.float64], tolerance: float = 0.0) -> npt.NDArray[np.bool_]:
        """
        Whether each parameter pair lies inside ``domain`` (always, when the
        surface is unbounded). A periodic u is compared modulo its period.
        """
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        if self.domain is None:
            return np.ones(len(uv), dtype=bool)
        (u_lo, u_hi), (v_lo, v_hi) = (sorted(self.domain[0]), sorted(self.domain[1]))
        u = uv[:, 0]
        period = self.u_period
        if period is not None:
            u = u_lo + np.mod(u - u_lo, period)
            # Just below u_lo wraps to the top of the period
            u = np.where(u_lo + period - u <= tolerance, u_lo, u)
        v = uv[:, 1]
        return (
            (u >= u_lo - tolerance) & (u <= u_hi + tolerance)
            & (v >= v_lo - tolerance) & (v <= v_hi + tolerance)
        )

    def distance(self, points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Distance of each point from the surface."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        back = self.evaluate(self.parameters(pts))
        return np.linalg.norm(pts - back, axis=1)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Surface:
        t = data.get("type")
        if t == SurfaceType.PLANE:
            return PlaneSurface.from_dict(data)
        if t == SurfaceType.CYLINDER:
            return CylinderSurface.from_dict(data)
        raise ValueError(f"Unknown surface type: {t!r}")


def _domain_from(data: Dict[str, Any]) -> Optional[Tuple[Tuple[float, float], Tuple[float, float]]]:
    dom = data.get("domain")
    if dom is None:
        return None
    return (float(dom[0][0]), float(dom[0][1])), (float(dom[1][0]), float(dom[1][1]))


@dataclass(frozen=True, eq=False)
class PlaneSurface(Surface):
    """Plane ``origin + u * u_axis + v * v_axis`` with orthonormal axes."""
    origin: npt.NDArray[np.float64]
    u_axis: npt.NDArray[np.float64]
    v_axis: npt.NDArray[np.float64]
    domain: Optional[Tuple[Tuple[float, float], Tuple[float, float]]] = None

    def __post_init__(self) -> None:
        u = unit(_vec(self.u_axis))
        v = _vec(self.v_axis)
        v = unit(v - np.dot(v, u) * u)
        object.__setattr__(self, "origin", _frozen(_vec(self.origin)))
        object.__setattr__(self, "u_axis", _frozen(u))
        object.__setattr__(self, "v_axis", _frozen(v))

    @classmethod
    def from_normal(cls, origin: Sequence[float], normal: Sequence[float]) -> PlaneSurface:
        """Plane through ``origin`` with a right-handed frame around ``normal``."""
        n = unit(_vec(normal))
        helper = np.array([1.0, 0.0, 0.0]) if abs(n[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
        u = unit(np.cross(helper, n))
        v = np.cross(n, u)
        return cls(origin=_vec(origin), u_axis=u, v_axis=v)

    @property
    def type(self) -> SurfaceType:
        return SurfaceType.PLANE

    @property
    def normal(self) -> npt.NDArray[np.float64]:
        return np.cross(self.u_axis, self.v_axis)

    def evaluate(self, uv: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        return self.origin + uv[:, :1] * self.u_axis + uv[:, 1:2] * self.v_axis

    def parameters(self, points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        d = np.asarray(points, dtype=np.float64).reshape(-1, 3) - self.origin
        return np.column_stack((d @ self.u_axis, d @ self.v_axis))

    def normals(self, uv: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        n = np.asarray(uv).reshape(-1, 2).shape[0]
        return np.tile(self.normal, (n, 1))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "origin": self.origin.tolist(),
            "u_axis": self.u_axis.tolist(),
            "v_axis": self.v_axis.tolist(),
            "domain": None if self.domain is None else [list(self.domain[0]), list(self.domain[1])],
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> PlaneSurface:
        if "normal" in data and "u_axis" not in data:
            return PlaneSurface.from_normal(data["origin"], data["normal"])
        return PlaneSurface(
            origin=data["origin"],
            u_axis=data["u_axis"],
            v_axis=data["v_axis"],
            domain=_domain_from(data),
        )


@dataclass(frozen=True, eq=False)
class CylinderSurface(Surface):
    """
    Cylinder of ``radius`` around the line ``origin + s * axis``.

    Isometric parameters: ``u = radius * angle`` (angle measured from
    ``ref_dir`` about ``axis``), ``v = s``. The surface normal points away
    from the axis.
    """
    origin: npt.NDArray[np.float64]
    axis: npt.NDArray[np.float64]
    radius: float
    ref_dir: npt.NDArray[np.float64] = field(default_factory=lambda: np.array([1.0, 0.0, 0.0]))
    domain: Optional[Tuple[Tuple[float, float], Tuple[float, float]]] = None
    side_dir: npt.NDArray[np.float64] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        a = unit(_vec(self.axis))
        r = _vec(self.ref_dir)
        r = r - np.dot(r, a) * a
        if np.linalg.norm(r) <= DEFAULT_EPSILON:
            helper = np.array([1.0, 0.0, 0.0]) if abs(a[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
            r = helper - np.dot(helper, a) * a
        r = unit(r)
        object.__setattr__(self, "origin", _frozen(_vec(self.origin)))
        object.__setattr__(self, "axis", _frozen(a))
        object.__setattr__(self, "ref_dir", _frozen(r))
        object.__setattr__(self, "side_dir", _frozen(np.cross(a, r)))
        object.__setattr__(self, "radius", float(self.radius))
        if self.radius <= 0.0:
            raise ValueError(f"Cylinder radius must be positive, got {self.radius}")

    @property
    def type(self) -> SurfaceType:
        return SurfaceType.CYLINDER

    def evaluate(self, uv: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        angle = (uv[:, 0] / self.radius).reshape(-1, 1)
        radial = np.cos(angle) * self.ref_dir + np.sin(angle) * self.side_dir
        return self.origin + self.radius * radial + uv[:, 1:2] * self.axis

    def _angles(self, points: npt.NDArray[np.float64]) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        d = np.asarray(points, dtype=np.float64).reshape(-1, 3) - self.origin
        s = d @ self.axis
        angle = np.arctan2(d @ self.side_dir, d @ self.ref_dir)
        return angle, s

    def parameters(self, points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        angle, s = self._angles(points)
        return np.column_stack((self.radius * angle, s))

    @property
    def u_period(self) -> Optional[float]:
        return 2.0 * math.pi * self.radius

    def parameters_along(self, points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        angle, s = self._angles(points)
        return np.column_stack((self.radius * np.unwrap(angle), s))

    def normals(self, uv: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        angle = (uv[:, 0] / self.radius).reshape(-1, 1)
        return np.cos(angle) * self.ref_dir + np.sin(angle) * self.side_dir

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "origin": self.origin.tolist(),
            "axis": self.axis.tolist(),
            "radius": self.radius,
            "ref_dir": self.ref_dir.tolist(),
            "domain": None if self.domain is None else [list(self.domain[0]), list(self.domain[1])],
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> CylinderSurface:
        return CylinderSurface(
            origin=data["origin"],
            axis=data["axis"],
            radius=data["radius"],
            ref_dir=_vec(data.get("ref_dir", (1.0, 0.0, 0.0))),
            domain=_domain_from(data),
        )

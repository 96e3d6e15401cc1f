import math

import numpy as np
import pytest

from brepmesh.model.geometry_primitives import CircularArc, CylinderSurface, Curve, LineCurve, PlaneSurface, Surface


def test_line_discretization():
    line = LineCurve([0.0, 0.0, 0.0], [1.0, 0.0, 0.0])
    assert line.length == pytest.approx(1.0)
    assert line.number_of_segments(0.3) == 4
    assert line.number_of_segments(0.5) == 2
    pts = line.discretize(0.5)
    np.testing.assert_allclose(pts[:, 0], [0.0, 0.5, 1.0])
    assert not line.is_closed


def test_full_circle_is_closed_and_gets_minimum_segments():
    circle = CircularArc(center=[0, 0, 0], radius=0.1, x_axis=[1, 0, 0], normal=[0, 0, 1])
    assert circle.is_closed
    assert circle.length == pytest.approx(2.0 * math.pi * 0.1)
    assert circle.number_of_segments(10.0) == 3
    pts = circle.discretize(segments=4)
    np.testing.assert_allclose(pts[0], pts[-1], atol=1e-12)
    np.testing.assert_allclose(np.linalg.norm(pts, axis=1), 0.1)


def test_arc_from_center_start_end():
    arc = CircularArc.from_center_start_end([0, 0, 0], [1, 0, 0], [0, 1, 0])
    assert arc.sweep == pytest.approx(0.5 * math.pi)
    np.testing.assert_allclose(arc.end, [0.0, 1.0, 0.0], atol=1e-12)
    cw = CircularArc.from_center_start_end([0, 0, 0], [1, 0, 0], [0, 1, 0], clockwise=True)
    assert cw.sweep == pytest.approx(-1.5 * math.pi)


def test_arc_from_three_points():
    arc = CircularArc.from_three_points([1, 0, 0], [0, 1, 0], [-1, 0, 0])
    np.testing.assert_allclose(arc.center, [0.0, 0.0, 0.0], atol=1e-12)
    assert arc.radius == pytest.approx(1.0)
    assert CircularArc.from_three_points([0, 0, 0], [1, 0, 0], [2, 0, 0]) is None


@pytest.mark.parametrize("curve", [
    LineCurve([0, 0, 0], [1, 2, 3]),
    CircularArc(center=[1, 1, 0], radius=2.0, x_axis=[0, 1, 0], normal=[0, 0, 1], domain=(0.0, 1.0)),
])
def test_curve_dict_round_trip(curve):
    restored = Curve.from_dict(curve.to_dict())
    np.testing.assert_allclose(restored.discretize(segments=5), curve.discretize(segments=5))


def test_line_point_queries():
    line = LineCurve([0, 0, 0], [2, 0, 0])
    np.testing.assert_allclose(line.closest_point([1.0, 1.0, 0.0]), [1.0, 0.0, 0.0])
    np.testing.assert_allclose(line.closest_point([-1.0, 1.0, 0.0]), [0.0, 0.0, 0.0])
    assert line.distance([1.0, 1.0, 0.0]) == pytest.approx(1.0)
    assert line.distance([3.0, 0.0, 0.0]) == pytest.approx(1.0)
    assert line.contains([1.0, 0.0, 0.0])
    assert not line.contains([1.0, 1e-3, 0.0])
    assert line.contains([1.0, 1e-3, 0.0], tolerance=1e-2)
    assert not line.contains([2.5, 0.0, 0.0])


def test_line_split():
    line = LineCurve([0, 0, 0], [2, 0, 0])
    first, second = line.split(0.25)
    np.testing.assert_allclose(first.end, [0.5, 0.0, 0.0])
    np.testing.assert_allclose(second.start, [0.5, 0.0, 0.0])
    np.testing.assert_allclose(second.end, [2.0, 0.0, 0.0])
    assert first.length == pytest.approx(0.5)
    assert second.length == pytest.approx(1.5)
    assert line.split(0.0) == (line,)
    assert line.split(1.5) == (line,)

    halves = line.split_at_point([1.0, 0.0, 0.0])
    assert [h.length for h in halves] == pytest.approx([1.0, 1.0])
    assert line.split_at_point([1.0, 1.0, 0.0]) == (line,)

    # Orientation is carried by the domain
    backward = LineCurve([0, 0, 0], [2, 0, 0], domain=(1.0, 0.0))
    np.testing.assert_allclose(backward.start, [2.0, 0.0, 0.0])
    first, second = backward.split(0.75)
    assert first.domain == (1.0, 0.75)
    np.testing.assert_allclose(first.end, [1.5, 0.0, 0.0])
    np.testing.assert_allclose(second.end, [0.0, 0.0, 0.0])
    assert backward.closest_parameter([-1.0, 0.0, 0.0]) == 0.0


def test_arc_point_queries():
    arc = CircularArc.from_center_start_end([0, 0, 0], [1, 0, 0], [0, 1, 0])
    s = math.sqrt(0.5)
    np.testing.assert_allclose(arc.closest_point([2.0, 2.0, 0.0]), [s, s, 0.0], atol=1e-12)
    assert arc.distance([2.0, 2.0, 0.0]) == pytest.approx(2.0 * math.sqrt(2.0) - 1.0)
    assert arc.distance([s, s, 0.5]) == pytest.approx(0.5)
    # Outside the sweep the nearer end is closest
    np.testing.assert_allclose(arc.closest_point([1.0, -0.1, 0.0]), [1.0, 0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(arc.closest_point([-1.0, 0.1, 0.0]), [0.0, 1.0, 0.0], atol=1e-12)
    assert arc.contains([0.0, 1.0, 0.0])
    assert arc.contains([s, s, 0.0])
    assert not arc.contains([0.0, -1.0, 0.0])


def test_arc_split():
    cw = CircularArc.from_center_start_end([0, 0, 0], [1, 0, 0], [0, -1, 0], clockwise=True)
    s = math.sqrt(0.5)
    np.testing.assert_allclose(cw.closest_point([1.0, -1.0, 0.0]), [s, -s, 0.0], atol=1e-12)
    first, second = cw.split(-0.25 * math.pi)
    assert first.length == pytest.approx(0.25 * math.pi)
    assert second.length == pytest.approx(0.25 * math.pi)
    np.testing.assert_allclose(first.end, [s, -s, 0.0], atol=1e-12)
    np.testing.assert_allclose(second.end, [0.0, -1.0, 0.0], atol=1e-12)
    assert cw.split(0.1) == (cw,)

    circle = CircularArc(center=[0, 0, 0], radius=1.0, x_axis=[1, 0, 0], normal=[0, 0, 1])
    pieces = circle.split_at_point([0.0, -1.0, 0.0])
    assert [p.length for p in pieces] == pytest.approx([1.5 * math.pi, 0.5 * math.pi])


def test_unknown_curve_type():
    with pytest.raises(ValueError):
        Curve.from_dict({"type": "spline"})


def test_plane_parameters_are_isometric():
    plane = PlaneSurface.from_normal([0, 0, 2], [0, 0, 1])
    pts = np.array([[1.0, 0.0, 2.0], [0.0, 1.0, 2.0]])
    uv = plane.parameters(pts)
    assert np.linalg.norm(uv[0] - uv[1]) == pytest.approx(math.sqrt(2.0))
    np.testing.assert_allclose(plane.evaluate(uv), pts, atol=1e-12)
    np.testing.assert_allclose(plane.normal, [0.0, 0.0, 1.0], atol=1e-12)
    assert plane.distance(np.array([[3.0, 3.0, 2.5]]))[0] == pytest.approx(0.5)
    assert plane.u_period is None


def test_cylinder_parameters():
    cyl = CylinderSurface(origin=[0, 0, 0], axis=[0, 0, 1], radius=2.0)
    assert cyl.u_period == pytest.approx(4.0 * math.pi)
    uv = np.array([[0.0, 0.5], [2.0 * math.pi, 1.0]])
    pts = cyl.evaluate(uv)
    np.testing.assert_allclose(pts[1], [-2.0, 0.0, 1.0], atol=1e-12)
    np.testing.assert_allclose(cyl.evaluate(cyl.parameters(pts)), pts, atol=1e-12)
    np.testing.assert_allclose(cyl.normals(uv)[0], [1.0, 0.0, 0.0], atol=1e-12)
    assert cyl.distance(np.array([[3.0, 0.0, 0.0]]))[0] == pytest.approx(1.0)


def test_cylinder_parameters_along_unwrap_the_seam():
    cyl = CylinderSurface(origin=[0, 0, 0], axis=[0, 0, 1], radius=1.0)
    angles = np.linspace(0.0, 2.0 * math.pi, 9)
    pts = np.column_stack((np.cos(angles), np.sin(angles), np.zeros_like(angles)))
    u = cyl.parameters_along(pts)[:, 0]
    assert np.all(np.diff(u) > 0.0)
    assert u[-1] - u[0] == pytest.approx(2.0 * math.pi)


def test_surface_dict_round_trip():
    cyl = CylinderSurface(origin=[0, 0, 0], axis=[0, 0, 1], radius=1.5, ref_dir=[0, 1, 0])
    restored = Surface.from_dict(cyl.to_dict())
    uv = np.array([[0.3, 0.2]])
    np.testing.assert_allclose(restored.evaluate(uv), cyl.evaluate(uv))


def test_surface_domain_bounds_parameters():
    plane = PlaneSurface(origin=[0, 0, 0], u_axis=[1, 0, 0], v_axis=[0, 1, 0], domain=((0.0, 1.0), (0.0, 2.0)))
    inside = plane.within_domain(np.array([[0.5, 1.0], [1.0, 2.0], [1.0 + 1e-9, 0.0], [1.5, 0.0]]), 1e-6)
    assert inside.tolist() == [True, True, True, False]
    assert PlaneSurface.from_normal([0, 0, 0], [0, 0, 1]).within_domain(np.array([[1e6, -1e6]])).all()


def test_cylinder_domain_wraps_the_period():
    half = CylinderSurface(origin=[0, 0, 0], axis=[0, 0, 1], radius=1.0, domain=((0.0, math.pi), (0.0, 1.0)))
    pts = np.array([[0.0, 1.0, 0.5], [0.0, -1.0, 0.5], [1.0, -1e-9, 0.5]])
    assert half.within_domain(half.parameters(pts), 1e-6).tolist() == [True, False, True]
    full = CylinderSurface(origin=[0, 0, 0], axis=[0, 0, 1], radius=1.0, domain=((0.0, 2.0 * math.pi), (0.0, 1.0)))
    assert full.within_domain(full.parameters(pts), 1e-6).all()

import copy

import numpy as np
import pytest

from brepmesh.config import FaceElement, MeshingPolicy, VolumeElement
from brepmesh.controller.discretizer import Discretizer, discretize
from brepmesh.controller.workers import CancellationToken
from brepmesh.errors import DiscretizationCancelled, MalformedTopology, MeshingFailure, ToleranceConflict
from brepmesh.mesh.associativity import MeshRef
from brepmesh.mesh.elements import ElementType, hexa_volumes, tetra_volumes, triangle_areas
from brepmesh.model.diagnostics import ReasonCode
from brepmesh.model.geometry import GeometryModel


def sorted_rows(cells):
    return {tuple(sorted(int(n) for n in row)) for row in cells}


def boundary_facets(tets):
    counts = {}
    for tet in tets:
        for facet in ElementType.TETRA.facets:
            key = tuple(sorted(int(tet[i]) for i in facet))
            counts[key] = counts.get(key, 0) + 1
    return {k for k, c in counts.items() if c == 1}


@pytest.fixture
def cube_result(unit_cube, policy):
    return discretize(unit_cube, policy)


class TestUnitCube:
    def test_complete_tetrahedral_mesh(self, cube_result):
        mesh = cube_result.mesh
        assert cube_result.complete
        assert len(mesh.elements_of_type(ElementType.POINT)) == 8
        assert len(mesh.elements_of_type(ElementType.LINE)) == 24
        assert len(mesh.elements_of_type(ElementType.TRIANGLE)) == 48
        tets = mesh.connectivity(ElementType.TETRA)
        assert len(tets) > 0
        vols = tetra_volumes(mesh.positions, tets)
        assert np.all(vols > 0.0)
        assert vols.sum() == pytest.approx(1.0)

    def test_vertex_nodes_sit_on_vertices(self, unit_cube, cube_result):
        for vertex in unit_cube.vertices:
            (node_id,) = cube_result.associativity.nodes_of(vertex.id)
            np.testing.assert_allclose(cube_result.mesh.positions[node_id], vertex.position)

    def test_volume_boundary_matches_face_meshes(self, cube_result):
        mesh = cube_result.mesh
        tets = mesh.connectivity(ElementType.TETRA)
        assert boundary_facets(tets) == sorted_rows(mesh.connectivity(ElementType.TRIANGLE))

    def test_shared_edges_reuse_nodes(self, unit_cube, cube_result):
        assoc = cube_result.associativity
        for edge in unit_cube.edges:
            edge_nodes = set(assoc.nodes_of(edge.id))
            assert len(edge_nodes) == 3
            for face_id in unit_cube.coboundary_of(edge.id):
                assert edge_nodes <= set(assoc.nodes_of(face_id))

    def test_solid_boundary_nodes_are_face_nodes(self, unit_cube, cube_result):
        assoc = cube_result.associativity
        positions = cube_result.mesh.positions
        solid_nodes = set(assoc.nodes_of(unit_cube.resolve("block")))
        on_boundary = {
            n for n in solid_nodes
            if np.any(np.isclose(positions[n], 0.0) | np.isclose(positions[n], 1.0))
        }
        face_nodes = set().union(*(assoc.nodes_of(f.id) for f in unit_cube.faces))
        assert on_boundary == face_nodes

    def test_every_element_has_a_primary_entity(self, unit_cube, cube_result):
        assoc = cube_result.associativity
        ids = {e.id for e in unit_cube}
        for element in cube_result.mesh.elements():
            assert assoc.primary_geometry_of(MeshRef.element(element.id)) in ids
        for node in cube_result.mesh.nodes():
            assert assoc.geometry_of(MeshRef.node(node.id))

    def test_associativity_round_trip(self, unit_cube, cube_result):
        assoc = cube_result.associativity
        assert set(assoc.geometry_ids()) == {e.id for e in unit_cube}
        for geometry_id in assoc.geometry_ids():
            for ref in assoc.mesh_entities_of(geometry_id):
                assert geometry_id in assoc.geometry_of(ref)
        referenced = cube_result.mesh.referenced_nodes()
        assert referenced.max() < cube_result.mesh.node_count()

    def test_facets_link_elements_to_boundary_entities(self, unit_cube, cube_result):
        assoc = cube_result.associativity
        xmin = unit_cube.resolve("xmin")
        block = unit_cube.resolve("block")
        linked = [e for e in assoc.elements_of(xmin) if assoc.primary_geometry_of(MeshRef.element(e)) == block]
        assert linked
        for element_id in linked:
            positions = cube_result.mesh.positions[list(cube_result.mesh.element(element_id).nodes)]
            assert np.sum(np.isclose(positions[:, 0], 0.0)) >= 3

        v0 = unit_cube.resolve("v0")
        (v0_node,) = assoc.nodes_of(v0)
        for line_id in assoc.elements_generated_by(unit_cube.resolve("e0_1")):
            touches_v0 = v0_node in cube_result.mesh.element(line_id).nodes
            assert (v0 in assoc.geometry_of(MeshRef.element(line_id))) == touches_v0

    def test_face_triangles_cover_faces(self, unit_cube, cube_result):
        mesh = cube_result.mesh
        for face in unit_cube.faces:
            cells = mesh.connectivity(ElementType.TRIANGLE)[
                np.isin(mesh.element_ids_of_type(ElementType.TRIANGLE),
                        cube_result.associativity.elements_generated_by(face.id))
            ]
            assert triangle_areas(mesh.positions, cells).sum() == pytest.approx(1.0)


class TestDeterminism:
    def test_repeated_runs_are_identical(self, unit_cube, policy):
        first = discretize(unit_cube, policy)
        second = discretize(unit_cube, policy)
        np.testing.assert_array_equal(first.mesh.positions, second.mesh.positions)
        for element_type in first.mesh.element_types():
            np.testing.assert_array_equal(
                first.mesh.connectivity(element_type), second.mesh.connectivity(element_type)
            )
        assert first.associativity.to_dict() == second.associativity.to_dict()

    def test_worker_count_does_not_change_deterministic_output(self, unit_cube, policy):
        parallel = MeshingPolicy(target_element_size=0.5, position_tolerance=1e-6, deterministic=True, workers=4)
        a = discretize(unit_cube, policy)
        b = discretize(unit_cube, parallel)
        np.testing.assert_array_equal(a.mesh.positions, b.mesh.positions)
        np.testing.assert_array_equal(a.mesh.connectivity("tetra"), b.mesh.connectivity("tetra"))

    def test_free_order_run_matches_up_to_numbering(self, unit_cube):
        def run(deterministic, workers):
            policy = MeshingPolicy(
                target_element_size=0.5, position_tolerance=1e-6, deterministic=deterministic,
                workers=workers, volume_element=VolumeElement.HEXA,
            )
            return discretize(unit_cube, policy).mesh.canonical()

        a, b = run(True, 1), run(False, 4)
        np.testing.assert_allclose(a.positions, b.positions)
        assert a.element_types() == b.element_types()
        for element_type in a.element_types():
            assert sorted_rows(a.connectivity(element_type)) == sorted_rows(b.connectivity(element_type))


class TestStructured:
    def test_hexahedral_cube(self, unit_cube):
        policy = MeshingPolicy(
            target_element_size=0.5, position_tolerance=1e-6, workers=1, deterministic=True,
            volume_element=VolumeElement.HEXA,
        )
        result = discretize(unit_cube, policy)
        mesh = result.mesh
        assert result.complete
        assert mesh.node_count() == 27
        assert len(mesh.elements_of_type(ElementType.POINT)) == 8
        assert len(mesh.elements_of_type(ElementType.LINE)) == 24
        assert len(mesh.elements_of_type(ElementType.QUAD)) == 24
        hexas = mesh.connectivity(ElementType.HEXA)
        assert len(hexas) == 8
        vols = hexa_volumes(mesh.positions, hexas)
        assert np.all(vols > 0.0)
        assert vols.sum() == pytest.approx(1.0)
        assert not mesh.elements_of_type(ElementType.TRIANGLE)

    def test_quad_plate(self, plate):
        policy = MeshingPolicy(target_element_size=0.5, position_tolerance=1e-6, workers=1,
                               face_element=FaceElement.QUAD)
        result = discretize(plate, policy)
        assert result.complete
        assert len(result.mesh.elements_of_type(ElementType.QUAD)) == 4
        assert result.mesh.node_count() == 9

    def test_holed_plate_falls_back_to_triangles(self, holed_plate):
        policy = MeshingPolicy(target_element_size=0.5, position_tolerance=1e-6, workers=1,
                               face_element=FaceElement.QUAD)
        result = discretize(holed_plate, policy)
        mesh = result.mesh
        assert result.complete
        assert not mesh.elements_of_type(ElementType.QUAD)
        area = triangle_areas(mesh.positions, mesh.connectivity(ElementType.TRIANGLE)).sum()
        assert area == pytest.approx(4.0 - np.pi * 0.25, rel=0.1)


def test_cylinder_is_meshed(cylinder, policy):
    result = discretize(cylinder, policy)
    assert result.complete
    mesh = result.mesh
    vols = tetra_volumes(mesh.positions, mesh.connectivity(ElementType.TETRA))
    assert np.all(vols > 0.0)
    assert vols.sum() == pytest.approx(np.pi, rel=0.1)
    # Seam edge nodes are shared by both sides of the lateral face
    seam_nodes = set(result.associativity.nodes_of(cylinder.resolve("seam")))
    assert seam_nodes <= set(result.associativity.nodes_of(cylinder.resolve("lateral")))


class TestFailures:
    @staticmethod
    def degenerate_graph():
        return {
            "vertices": [{"id": "a", "position": [0, 0, 0]}, {"id": "b", "position": [0, 0, 0]}],
            "edges": [{"id": "ab", "vertices": ["a", "b"]}],
        }

    def test_degenerate_edge_is_reported_once(self, policy):
        model = GeometryModel.ingest(self.degenerate_graph())
        result = discretize(model, policy)
        assert not result.complete
        assert [d.reason for d in result.diagnostics] == [ReasonCode.DEGENERATE_EDGE]
        assert result.mesh.node_count() == 1
        assert len(result.mesh.elements_of_type(ElementType.POINT)) == 2
        assert not result.mesh.elements_of_type(ElementType.LINE)

    def test_degenerate_edge_under_strict_policy(self):
        model = GeometryModel.ingest(self.degenerate_graph())
        with pytest.raises(MeshingFailure) as info:
            discretize(model, MeshingPolicy(position_tolerance=1e-6, strict=True, workers=1))
        assert info.value.reason == ReasonCode.DEGENERATE_EDGE.value

    def test_malformed_input_under_strict_policy(self, cube_graph):
        raw = copy.deepcopy(cube_graph)
        raw["faces"][0]["loops"][0].pop()
        model = GeometryModel.ingest(raw)
        with pytest.raises(MalformedTopology):
            discretize(model, MeshingPolicy(target_element_size=0.5, strict=True, workers=1))

    def test_malformed_input_best_effort(self, cube_graph, policy):
        raw = copy.deepcopy(cube_graph)
        raw["faces"][0]["loops"][0].pop()
        result = discretize(GeometryModel.ingest(raw), policy)
        reasons = {d.reason for d in result.diagnostics}
        assert ReasonCode.OPEN_LOOP in reasons
        assert len(result.mesh.elements_of_type(ElementType.TRIANGLE)) == 5 * 8
        assert not result.mesh.elements_of_type(ElementType.TETRA)

    def test_vertices_closer_than_tolerance(self):
        model = GeometryModel.ingest({
            "vertices": [{"id": "a", "position": [0, 0, 0]}, {"id": "b", "position": [5e-7, 0, 0]}],
        })
        with pytest.raises(ToleranceConflict) as info:
            discretize(model, MeshingPolicy(position_tolerance=1e-6, workers=1))
        assert set(info.value.entities) == {"a", "b"}

    def test_element_size_below_tolerance(self, unit_cube):
        with pytest.raises(ToleranceConflict):
            discretize(unit_cube, MeshingPolicy(target_element_size=1e-7, position_tolerance=1e-6))
        with pytest.raises(ToleranceConflict):
            discretize(unit_cube, MeshingPolicy(position_tolerance=1e-6, size_overrides={"xmin": 1e-7}))

    def test_cancelled_before_start(self, unit_cube, policy):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(DiscretizationCancelled):
            Discretizer(policy).run(unit_cube, cancel=token)


def test_size_override_refines_face_and_its_edges(unit_cube):
    policy = MeshingPolicy(target_element_size=0.5, position_tolerance=1e-6, workers=1,
                           size_overrides={"xmin": 0.25})
    result = discretize(unit_cube, policy)
    assoc = result.associativity
    xmin_edges = set(unit_cube.boundary_of("xmin"))
    for edge in unit_cube.edges:
        expected = 4 if edge.id in xmin_edges else 2
        assert len(assoc.elements_generated_by(edge.id)) == expected

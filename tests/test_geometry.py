import copy

import numpy as np
import pytest

from brepmesh.config import IngestPolicy
from brepmesh.errors import MalformedTopology, UnknownEntity
from brepmesh.model.diagnostics import ReasonCode
from brepmesh.model.geometry import GeometryModel
from brepmesh.model.topology import EntityKind
from brepmesh.model.shapes import ShapeKind, ShapeSpec, box_graph, plate_graph


def reasons(model):
    return {d.entity_name: d.reason for d in model.diagnostics}


class TestArena:
    def test_ids_are_dense_in_dimension_order(self, unit_cube):
        assert len(unit_cube) == 8 + 12 + 6 + 1
        assert [v.id for v in unit_cube.vertices] == list(range(8))
        assert [e.id for e in unit_cube.edges] == list(range(8, 20))
        assert [f.id for f in unit_cube.faces] == list(range(20, 26))
        assert unit_cube.solids[0].id == 26
        assert [e.id for e in unit_cube.entities_of_dimension(2)] == list(range(20, 26))
        assert not unit_cube.diagnostics

    def test_resolve_by_name_and_id(self, unit_cube):
        face_id = unit_cube.resolve("xmin")
        assert unit_cube.resolve(face_id) == face_id
        assert unit_cube.name_of(face_id) == "xmin"
        assert unit_cube.kind_of("xmin") == EntityKind.FACE
        assert "block" in unit_cube
        assert "nope" not in unit_cube
        with pytest.raises(UnknownEntity):
            unit_cube.resolve(999)
        with pytest.raises(UnknownEntity):
            unit_cube.entity("missing")

    def test_boundary_and_coboundary(self, unit_cube):
        edge = unit_cube.entity("e0_1")
        assert set(unit_cube.boundary_of(edge.id)) == {unit_cube.resolve("v0"), unit_cube.resolve("v1")}
        assert {unit_cube.name_of(f) for f in unit_cube.coboundary_of(edge.id)} == {"ymin", "zmin"}
        assert unit_cube.coboundary_of("xmin") == (unit_cube.resolve("block"),)
        assert len(unit_cube.boundary_of("block")) == 6
        assert len(unit_cube.coboundary_of("v0")) == 3

    def test_closure_of_face(self, unit_cube):
        closure = unit_cube.closure_of("zmin")
        kinds = [unit_cube.kind_of(i) for i in closure]
        assert kinds.count(EntityKind.FACE) == 1
        assert kinds.count(EntityKind.EDGE) == 4
        assert kinds.count(EntityKind.VERTEX) == 4

    def test_bounding_box(self, unit_cube):
        box = unit_cube.bounding_box()
        np.testing.assert_allclose(box.min, [0.0, 0.0, 0.0])
        np.testing.assert_allclose(box.max, [1.0, 1.0, 1.0])
        assert unit_cube.diagonal == pytest.approx(np.sqrt(3.0))

    def test_oriented_vertices(self, unit_cube):
        face = unit_cube.entity("zmin")
        for loop in face.loops:
            ends = [unit_cube.oriented_vertices(u) for u in loop.uses]
            for k, (_, end) in enumerate(ends):
                assert end == ends[(k + 1) % len(ends)][0]

    def test_to_dict_rebuilds_same_model(self, unit_cube):
        rebuilt = GeometryModel.ingest(unit_cube.to_dict())
        assert len(rebuilt) == len(unit_cube)
        assert [e.name for e in rebuilt] == [e.name for e in unit_cube]

    def test_cylinder_seam_edge_used_twice(self, cylinder):
        lateral = cylinder.entity("lateral")
        seam = cylinder.resolve("seam")
        assert sum(1 for u in lateral.loops[0].uses if u.edge == seam) == 2
        assert cylinder.entity("bottom_circle").start == cylinder.entity("bottom_circle").end

    def test_shape_catalog(self):
        graph = ShapeSpec(ShapeKind.PLATE, (2.0, 1.0, 0.25), name="slab").graph()
        model = GeometryModel.ingest(graph)
        assert model.resolve("slab") in [f.id for f in model.faces]
        assert len(model.entity("slab").loops) == 2


class TestValidation:
    def test_open_loop_is_rejected_in_strict_mode(self, cube_graph):
        raw = copy.deepcopy(cube_graph)
        raw["faces"][0]["loops"][0].pop()
        with pytest.raises(MalformedTopology) as info:
            GeometryModel.ingest(raw, IngestPolicy(best_effort=False))
        assert info.value.reason == ReasonCode.OPEN_LOOP.value

    def test_open_loop_skips_face_and_dependent_solid(self, cube_graph):
        raw = copy.deepcopy(cube_graph)
        raw["faces"][0]["loops"][0].pop()
        model = GeometryModel.ingest(raw)
        found = reasons(model)
        assert found["xmin"] == ReasonCode.OPEN_LOOP
        assert found["block"] == ReasonCode.DEPENDENCY_SKIPPED
        assert len(model.faces) == 5
        assert not model.solids
        # Ids stay dense without the skipped entities
        assert [e.id for e in model] == list(range(len(model)))

    def test_dangling_vertex_reference(self, cube_graph):
        raw = copy.deepcopy(cube_graph)
        raw["edges"][0]["vertices"] = ["v0", "ghost"]
        model = GeometryModel.ingest(raw)
        assert reasons(model)[raw["edges"][0]["id"]] == ReasonCode.DANGLING_REFERENCE

    def test_edge_needs_two_vertices(self):
        raw = plate_graph()
        raw["edges"][0]["vertices"] = ["p0"]
        model = GeometryModel.ingest(raw)
        assert reasons(model)["bottom"] == ReasonCode.BAD_VERTEX_COUNT
        assert reasons(model)["plate"] == ReasonCode.DEPENDENCY_SKIPPED

    def test_endpoint_mismatch(self):
        raw = plate_graph()
        raw["edges"][0]["curve"]["end"] = [0.5, 0.0, 0.0]
        model = GeometryModel.ingest(raw)
        assert reasons(model)["bottom"] == ReasonCode.ENDPOINT_MISMATCH

    def test_edge_off_surface(self):
        raw = plate_graph()
        raw["faces"][0]["surface"]["origin"] = [0.0, 0.0, 0.1]
        model = GeometryModel.ingest(raw)
        assert reasons(model)["plate"] == ReasonCode.VERTEX_OFF_SURFACE

    def test_boundary_outside_surface_domain(self):
        raw = plate_graph()
        raw["faces"][0]["surface"]["domain"] = [[0.0, 0.5], [0.0, 1.0]]
        model = GeometryModel.ingest(raw)
        assert reasons(model)["plate"] == ReasonCode.VERTEX_OFF_SURFACE

        raw["faces"][0]["surface"]["domain"] = [[0.0, 1.0], [0.0, 1.0]]
        model = GeometryModel.ingest(raw)
        assert not model.diagnostics
        assert model.faces[0].surface.domain == ((0.0, 1.0), (0.0, 1.0))

    def test_open_shell(self, cube_graph):
        raw = copy.deepcopy(cube_graph)
        raw["solids"][0]["faces"] = raw["solids"][0]["faces"][:-1]
        model = GeometryModel.ingest(raw)
        assert reasons(model)["block"] == ReasonCode.OPEN_SHELL

    def test_duplicate_face_in_shell(self, cube_graph):
        raw = copy.deepcopy(cube_graph)
        raw["solids"][0]["faces"].append("xmin")
        model = GeometryModel.ingest(raw)
        assert reasons(model)["block"] == ReasonCode.INVALID_DEFINITION

    def test_duplicate_names(self):
        raw = plate_graph()
        raw["vertices"].append({"id": "p0", "position": [5.0, 5.0, 0.0]})
        model = GeometryModel.ingest(raw)
        assert reasons(model)["p0"] == ReasonCode.INVALID_DEFINITION
        np.testing.assert_allclose(model.vertex_position("p0"), [0.0, 0.0, 0.0])

    def test_bad_surface_definition(self):
        raw = plate_graph()
        raw["faces"][0]["surface"] = {"type": "torus"}
        model = GeometryModel.ingest(raw)
        assert reasons(model)["plate"] == ReasonCode.INVALID_DEFINITION

    def test_zero_length_edge_is_flagged_degenerate(self):
        raw = {
            "vertices": [{"id": "a", "position": [0, 0, 0]}, {"id": "b", "position": [0, 0, 0]}],
            "edges": [{"id": "ab", "vertices": ["a", "b"]}],
        }
        model = GeometryModel.ingest(raw)
        assert model.entity("ab").degenerate
        assert reasons(model)["ab"] == ReasonCode.DEGENERATE_EDGE
        assert not model.diagnostics[0].is_topological

    def test_degenerate_flag_on_long_edge(self):
        raw = plate_graph()
        raw["edges"][0]["degenerate"] = True
        model = GeometryModel.ingest(raw)
        assert reasons(model)["bottom"] == ReasonCode.INVALID_DEFINITION

    def test_box_graph_origin_and_size(self):
        model = GeometryModel.ingest(box_graph(size=(2.0, 3.0, 4.0), origin=(1.0, 1.0, 1.0)))
        np.testing.assert_allclose(model.vertex_position("v7"), [3.0, 4.0, 5.0])
        assert not model.diagnostics

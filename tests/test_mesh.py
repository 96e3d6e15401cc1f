import numpy as np
import pytest

from brepmesh.mesh.associativity import AssociativityBuilder, MeshRef
from brepmesh.mesh.elements import Element, ElementType, hexa_volumes, tetra_volumes
from brepmesh.mesh.mesh import MeshModel
from brepmesh.mesh.node import Node

UNIT_HEXA = np.array([
    [0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0],
    [0, 0, 1], [1, 0, 1], [1, 1, 1], [0, 1, 1],
], dtype=float)


@pytest.fixture
def two_triangles():
    positions = [[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0]]
    elements = [
        Element(0, ElementType.TRIANGLE, (0, 1, 2)),
        Element(1, ElementType.TRIANGLE, (0, 2, 3)),
        Element(2, ElementType.LINE, (0, 1)),
    ]
    return MeshModel(positions, elements)


def test_element_type_catalog():
    assert ElementType.TETRA.node_count == 4
    assert ElementType.QUAD.dimension == 2
    assert ElementType.HEXA.meshio_name == "hexahedron"
    assert len(ElementType.HEXA.facets) == 6


def test_element_validates_node_count():
    with pytest.raises(ValueError):
        Element(0, ElementType.TRIANGLE, (0, 1))


def test_volumes():
    assert hexa_volumes(UNIT_HEXA, np.arange(8)[None, :])[0] == pytest.approx(1.0)
    tet = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=float)
    assert tetra_volumes(tet, np.array([[0, 1, 2, 3]]))[0] == pytest.approx(1.0 / 6.0)


def test_mesh_queries(two_triangles):
    mesh = two_triangles
    assert mesh.node_count() == 4
    assert mesh.element_count() == 3
    assert mesh.element_types() == [ElementType.LINE, ElementType.TRIANGLE]
    np.testing.assert_array_equal(mesh.connectivity("triangle"), [[0, 1, 2], [0, 2, 3]])
    assert mesh.connectivity(ElementType.TETRA).shape == (0, 4)
    assert mesh.node(2) == Node(2, np.array([1.0, 1.0, 0.0]))
    assert mesh.referenced_nodes().tolist() == [0, 1, 2, 3]
    with pytest.raises(ValueError):
        mesh.positions[0, 0] = 5.0
    with pytest.raises(IndexError):
        mesh.element(3)


def test_mesh_rejects_bad_elements():
    with pytest.raises(ValueError):
        MeshModel([[0, 0, 0]], [Element(1, ElementType.POINT, (0,))])
    with pytest.raises(ValueError):
        MeshModel([[0, 0, 0]], [Element(0, ElementType.LINE, (0, 1))])


def test_renumbered(two_triangles):
    moved = two_triangles.renumbered(node_order=[3, 2, 1, 0], element_order=[2, 0, 1])
    assert moved.element(0).type == ElementType.LINE
    assert moved.element(0).nodes == (3, 2)
    np.testing.assert_allclose(moved.positions[0], [0.0, 1.0, 0.0])
    with pytest.raises(ValueError):
        two_triangles.renumbered(node_order=[0, 0, 1, 2])


def test_canonical_is_order_independent(two_triangles):
    shuffled = two_triangles.renumbered(node_order=[2, 0, 3, 1], element_order=[1, 2, 0])
    a, b = two_triangles.canonical(), shuffled.canonical()
    np.testing.assert_allclose(a.positions, b.positions)
    np.testing.assert_array_equal(
        np.sort(a.connectivity("triangle"), axis=1), np.sort(b.connectivity("triangle"), axis=1)
    )


def test_associativity_builder_and_renumbering():
    builder = AssociativityBuilder()
    builder.add_node(0, 10, primary=True)
    builder.add_node(0, 20)
    builder.add_nodes([1, 2], 20)
    builder.add_element(0, 20, primary=True)
    builder.add_element(0, 10)
    assoc = builder.freeze()

    assert assoc.geometry_of(MeshRef.node(0)) == {10, 20}
    assert assoc.primary_geometry_of(MeshRef.node(0)) == 10
    assert assoc.primary_geometry_of(MeshRef.node(1)) == 20
    assert assoc.nodes_of(20) == (0, 1, 2)
    assert assoc.elements_of(10) == (0,)
    assert assoc.elements_generated_by(10) == ()
    assert assoc.geometry_ids() == (10, 20)
    assert assoc.geometry_of(MeshRef.element(7)) == frozenset()

    moved = assoc.renumbered(node_order=[2, 1, 0])
    assert moved.geometry_of(MeshRef.node(2)) == {10, 20}
    assert moved.primary_geometry_of(MeshRef.node(0)) == 20

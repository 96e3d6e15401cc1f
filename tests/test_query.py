import numpy as np
import pytest

from brepmesh.controller.discretizer import discretize
from brepmesh.errors import PropertySetFrozen, UnknownEntity
from brepmesh.export.query import MeshQuery
from brepmesh.mesh.associativity import MeshRef
from brepmesh.mesh.elements import ElementType
from brepmesh.model.properties import Fixity, FixedDisplacement, Material, PrescribedTemperature, PropertySet

STEEL = Material("steel", young_modulus=210e9, poisson_ratio=0.3, density=7850.0)
ALUMINIUM = Material("aluminium", young_modulus=70e9, poisson_ratio=0.33, density=2700.0)
SUPPORT = FixedDisplacement(Fixity.FIXED)


@pytest.fixture
def loaded_cube(unit_cube):
    props = PropertySet(unit_cube)
    props.attach("material", STEEL, targets=["block"])
    props.attach("support", SUPPORT, targets=["xmin"])
    return props


@pytest.fixture
def query(unit_cube, policy, loaded_cube):
    return MeshQuery(discretize(unit_cube, policy, loaded_cube))


def on_xmin(query, element):
    return np.isclose(query.node_positions()[list(element.nodes), 0], 0.0)


def test_interior_and_boundary_elements(unit_cube, query):
    tets = query.mesh.elements_of_type(ElementType.TETRA)
    interior = [t for t in tets if np.sum(on_xmin(query, t)) < 3]
    touching = [t for t in tets if np.sum(on_xmin(query, t)) >= 3]
    assert interior and touching

    for tet in interior:
        assert query.resolved_properties(tet.id) == [("material", STEEL)]
    for tet in touching:
        assert query.resolved_properties(tet.id) == [("material", STEEL), ("support", SUPPORT)]

    xmin = unit_cube.resolve("xmin")
    for element in query.elements_of(xmin):
        if element.type == ElementType.TRIANGLE:
            assert query.resolved_properties(element.id) == [("support", SUPPORT)]


def test_nodes_on_face_carry_its_condition(unit_cube, query):
    for ref in query.mesh_of(unit_cube.resolve("xmin")):
        if ref.kind == "node":
            assert ("support", SUPPORT) in query.resolved_node_properties(ref.id)


def test_last_write_wins(unit_cube, policy, loaded_cube):
    loaded_cube.attach("material", ALUMINIUM, targets=["block"])
    loaded_cube.attach("hot", PrescribedTemperature(500.0), targets=["xmax"])
    query = MeshQuery(discretize(unit_cube, policy, loaded_cube))
    tet = query.mesh.elements_of_type(ElementType.TETRA)[0]
    materials = [v for _, v in query.resolved_properties(tet.id) if isinstance(v, Material)]
    assert materials == [ALUMINIUM]


def test_unknown_mesh_entity(query):
    with pytest.raises(UnknownEntity):
        query.geometry_of(MeshRef.element(len(query)))
    with pytest.raises(UnknownEntity):
        query.primary_geometry_of(MeshRef.node(-1))


def test_property_table_and_container(query):
    table = query.property_table()
    assert len(query) == query.mesh.element_count()
    assert sum(1 for _ in query) == len(query)
    # Edges and vertices outside xmin have no property attached
    assert 0 < len(table) < len(query)
    assert query.diagnostics == ()


def test_bare_mesh_needs_associativity(unit_cube, policy):
    result = discretize(unit_cube, policy)
    with pytest.raises(ValueError):
        MeshQuery(result.mesh)
    query = MeshQuery(result.mesh, result.associativity)
    assert query.resolved_properties(0) == []


def test_result_keeps_properties_of_its_run(unit_cube, policy, loaded_cube):
    result = discretize(unit_cube, policy, loaded_cube)
    query = MeshQuery(result)
    tet = query.mesh.elements_of_type(ElementType.TETRA)[0]
    assert query.resolved_properties(tet.id) == [("material", STEEL)]

    loaded_cube.attach("material", ALUMINIUM, targets=["block"])

    assert query.resolved_properties(tet.id) == [("material", STEEL)]
    assert MeshQuery(result).resolved_properties(tet.id) == [("material", STEEL)]
    assert result.properties is not loaded_cube
    assert result.properties.frozen
    with pytest.raises(PropertySetFrozen):
        result.properties.attach("material", ALUMINIUM, targets=["block"])
    assert not loaded_cube.frozen


def test_same_inputs_same_result(unit_cube, policy, loaded_cube):
    first = MeshQuery(discretize(unit_cube, policy, loaded_cube))
    second = MeshQuery(discretize(unit_cube, policy, loaded_cube))

    a, b = first.mesh.canonical(), second.mesh.canonical()
    np.testing.assert_array_equal(a.positions, b.positions)
    for element_type in a.element_types():
        np.testing.assert_array_equal(a.connectivity(element_type), b.connectivity(element_type))
    assert first.property_table() == second.property_table()
    for element in first.mesh.elements():
        assert first.resolved_properties(element.id) == second.resolved_properties(element.id)

import logging

import pytest

from brepmesh.config import MeshingPolicy
from brepmesh.model.geometry import GeometryModel
from brepmesh.model.shapes import box_graph, cylinder_graph, plate_graph


@pytest.fixture(autouse=True)
def _quiet_logging(caplog):
    caplog.set_level(logging.WARNING, logger="brepmesh")


@pytest.fixture
def cube_graph():
    return box_graph()


@pytest.fixture
def unit_cube(cube_graph):
    return GeometryModel.ingest(cube_graph)


@pytest.fixture
def cylinder():
    return GeometryModel.ingest(cylinder_graph(radius=1.0, height=1.0))


@pytest.fixture
def plate():
    return GeometryModel.ingest(plate_graph(1.0, 1.0))


@pytest.fixture
def holed_plate():
    return GeometryModel.ingest(plate_graph(2.0, 2.0, hole_radius=0.5))


@pytest.fixture
def policy():
    """Sequential, reproducible run on the unit cube scale."""
    return MeshingPolicy(target_element_size=0.5, position_tolerance=1e-6, deterministic=True, workers=1)

import logging

import pytest

from brepmesh.logging_config import setup_logging
from brepmesh.model.io import GraphIO
from brepmesh.model.shapes import cylinder_graph


def test_boundary_graph_round_trip(tmp_path):
    path = str(tmp_path / "cylinder.json")
    GraphIO.save_boundary_graph(cylinder_graph(radius=0.5), path)
    model = GraphIO.load_geometry(path)
    assert len(model.faces) == 3
    assert not model.diagnostics


def test_missing_graph_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        GraphIO.load_boundary_graph(str(tmp_path / "missing.json"))


def test_graph_must_be_an_object(tmp_path):
    path = tmp_path / "list.json"
    path.write_text("[1, 2, 3]")
    with pytest.raises(ValueError):
        GraphIO.load_boundary_graph(str(path))


def test_setup_logging_does_not_stack_handlers(tmp_path):
    log_file = tmp_path / "run.log"
    foreign = logging.NullHandler()
    logging.getLogger("brepmesh").addHandler(foreign)
    logger = setup_logging(logging.DEBUG)
    logger = setup_logging("debug", log_file=str(log_file))
    try:
        assert len(logger.handlers) == 3
        assert foreign in logger.handlers
        assert logger.level == logging.DEBUG
        logging.getLogger("brepmesh.controller").debug("child message")
        for handler in logger.handlers:
            handler.flush()
        text = log_file.read_text(encoding="utf-8")
        assert "child message" in text
        assert "[MainThread] brepmesh.controller DEBUG" in text
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


def test_setup_logging_rejects_unknown_level():
    with pytest.raises(ValueError):
        setup_logging("loud")

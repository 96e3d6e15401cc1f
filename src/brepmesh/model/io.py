"""
Input/Output (JSON)
Loads and saves raw boundary graphs and property records.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional, TYPE_CHECKING

from brepmesh.config import IngestPolicy

if TYPE_CHECKING:
    from brepmesh.model.geometry import GeometryModel
    from brepmesh.model.properties import PropertySet

logger = logging.getLogger(__name__)


class GraphIO:

    @staticmethod
    def load_boundary_graph(filepath: str) -> Dict[str, Any]:
        """Read a raw boundary graph (see ``brepmesh.model.geometry``) from JSON."""
        logger.info(f"Loading boundary graph from: {filepath}")
        if not os.path.exists(filepath):
            msg = f"File '{filepath}' does not exist."
            logger.error(msg)
            raise FileNotFoundError(msg)
        with open(filepath, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Boundary graph in '{filepath}' must be a JSON object.")
        return data

    @staticmethod
    def save_boundary_graph(graph: Dict[str, Any], filepath: str) -> None:
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(graph, f, indent=2)
        logger.info(f"Boundary graph saved to: {filepath}")

    @staticmethod
    def load_geometry(filepath: str, policy: Optional[IngestPolicy] = None) -> GeometryModel:
        from brepmesh.model.geometry import GeometryModel
        return GeometryModel.ingest(GraphIO.load_boundary_graph(filepath), policy)

    @staticmethod
    def save_properties(properties: PropertySet, filepath: str) -> None:
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(properties.to_records(), f, indent=2)
        logger.info(f"{len(properties.attachments)} property attachments saved to: {filepath}")

    @staticmethod
    def load_properties(geometry: GeometryModel, filepath: str) -> PropertySet:
        from brepmesh.model.properties import PropertySet
        logger.info(f"Loading properties from: {filepath}")
        with open(filepath, "r", encoding="utf-8") as f:
            records = json.load(f)
        return PropertySet.from_records(geometry, records)

"""
Solver Artifact
===============
Flattens a MeshModel, its resolved properties and its provenance into plain
arrays, and writes them as JSON, HDF5 or any meshio format.

Layout of the HDF5 file::

    /                   attrs: version, format
    /nodes/positions    float64 (n, 3)
    /elements/<type>/   connectivity int64 (m, k), ids int64 (m,), geometry int64 (m,)
    /tables/properties  JSON blob, keyed by element id
    /tables/diagnostics JSON blob
    /tables/associativity JSON blob (optional)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

import h5py
import meshio
import numpy as np

from brepmesh.config import FLOAT_DTYPE, INDEX_DTYPE
from brepmesh.mesh.associativity import MeshRef
from brepmesh.mesh.elements import ElementType

if TYPE_CHECKING:
    import numpy.typing as npt
    from brepmesh.mesh.associativity import AssociativityMap
    from brepmesh.mesh.mesh import MeshModel
    from brepmesh.model.diagnostics import Diagnostic
    from brepmesh.model.properties import PropertyValue

logger = logging.getLogger(__name__)

try:
    APP_VERSION = version("brepmesh")
except PackageNotFoundError:
    APP_VERSION = "0.0.0-dev"

ARTIFACT_FORMAT = "brepmesh-artifact"


@dataclass
class MeshArtifact:
    """
    positions: (n, 3) float64, row index is the node id.
    connectivity / element_ids / geometry: per element type name; ``geometry``
        holds the generating geometric entity of each element (-1 if unknown).
    properties: element id -> [{"property_id", "value"}] in resolution order.
    """
    positions: npt.NDArray[np.float64]
    connectivity: Dict[str, npt.NDArray[np.int64]] = field(default_factory=dict)
    element_ids: Dict[str, npt.NDArray[np.int64]] = field(default_factory=dict)
    geometry: Dict[str, npt.NDArray[np.int64]] = field(default_factory=dict)
    properties: Dict[int, List[Dict[str, Any]]] = field(default_factory=dict)
    diagnostics: List[Dict[str, Any]] = field(default_factory=list)
    associativity: Optional[Dict[str, Any]] = None

    def __repr__(self) -> str:
        counts = ", ".join(f"{len(ids)} {name}" for name, ids in self.element_ids.items())
        return f"{self.__class__.__name__}(nodes={len(self.positions)}, elements=[{counts}])"

    @property
    def node_count(self) -> int:
        return len(self.positions)

    @property
    def element_count(self) -> int:
        return sum(len(ids) for ids in self.element_ids.values())

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible representation."""
        return {
            "version": APP_VERSION,
            "format": ARTIFACT_FORMAT,
            "positions": self.positions.tolist(),
            "elements": {
                name: {
                    "connectivity": self.connectivity[name].tolist(),
                    "ids": self.element_ids[name].tolist(),
                    "geometry": self.geometry[name].tolist(),
                }
                for name in self.connectivity
            },
            "properties": {str(k): v for k, v in sorted(self.properties.items())},
            "diagnostics": self.diagnostics,
            "associativity": self.associativity,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> MeshArtifact:
        elements = data.get("elements", {})
        return MeshArtifact(
            positions=np.array(data["positions"], dtype=FLOAT_DTYPE).reshape(-1, 3),
            connectivity={
                name: np.array(block["connectivity"], dtype=INDEX_DTYPE).reshape(-1, ElementType(name).node_count)
                for name, block in elements.items()
            },
            element_ids={name: np.array(block["ids"], dtype=INDEX_DTYPE) for name, block in elements.items()},
            geometry={name: np.array(block["geometry"], dtype=INDEX_DTYPE) for name, block in elements.items()},
            properties={int(k): v for k, v in data.get("properties", {}).items()},
            diagnostics=list(data.get("diagnostics", [])),
            associativity=data.get("associativity"),
        )


def serialize(
    mesh: MeshModel,
    resolved: Mapping[int, Sequence[Tuple[str, PropertyValue]]],
    associativity: Optional[AssociativityMap] = None,
    diagnostics: Iterable[Diagnostic] = (),
) -> MeshArtifact:
    """
    Build the solver artifact.

    Args:
        mesh: the discretized mesh.
        resolved: element id -> resolved (property_id, value) pairs.
        associativity: adds the generating entity of each element and the
            full reverse lookup.
        diagnostics: findings of the run that produced ``mesh``.
    """
    artifact = MeshArtifact(positions=np.array(mesh.positions, dtype=FLOAT_DTYPE))
    for element_type in mesh.element_types():
        ids = mesh.element_ids_of_type(element_type).astype(INDEX_DTYPE)
        artifact.connectivity[element_type.value] = mesh.connectivity(element_type).astype(INDEX_DTYPE)
        artifact.element_ids[element_type.value] = ids
        if associativity is not None:
            primary = [associativity.primary_geometry_of(MeshRef.element(int(e))) for e in ids]
            geometry = np.array([-1 if g is None else g for g in primary], dtype=INDEX_DTYPE)
        else:
            geometry = np.full(len(ids), -1, dtype=INDEX_DTYPE)
        artifact.geometry[element_type.value] = geometry

    artifact.properties = {
        int(element_id): [{"property_id": pid, "value": value.to_dict()} for pid, value in pairs]
        for element_id, pairs in resolved.items()
        if pairs
    }
    artifact.diagnostics = [d.to_dict() for d in diagnostics]
    if associativity is not None:
        artifact.associativity = associativity.to_dict()
    logger.info(f"Serialized {artifact!r} with properties on {len(artifact.properties)} elements.")
    return artifact


# ------------------------------------------------------------------------------
# Writers
# ------------------------------------------------------------------------------
def write_json(artifact: MeshArtifact, filepath: str, indent: Optional[int] = None) -> None:
    logger.info(f"Writing artifact JSON to: {filepath}")
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(artifact.to_dict(), f, indent=indent)


def read_json(filepath: str) -> MeshArtifact:
    with open(filepath, "r", encoding="utf-8") as f:
        return MeshArtifact.from_dict(json.load(f))


def _json_blob(group: h5py.Group, name: str, payload: Any) -> None:
    group.create_dataset(name, data=np.void(json.dumps(payload).encode("utf-8")))


def _read_blob(group: h5py.Group, name: str) -> Any:
    return json.loads(group[name][()].tobytes().decode("utf-8"))


def write_hdf5(artifact: MeshArtifact, filepath: str) -> None:
    logger.info(f"Writing artifact HDF5 to: {filepath}")
    try:
        with h5py.File(filepath, "w") as f:
            f.attrs["version"] = APP_VERSION
            f.attrs["format"] = ARTIFACT_FORMAT

            grp_nodes = f.create_group("nodes")
            grp_nodes.create_dataset("positions", data=artifact.positions, compression="gzip")

            grp_elements = f.create_group("elements")
            for name, conn in artifact.connectivity.items():
                grp = grp_elements.create_group(name)
                grp.create_dataset("connectivity", data=conn, compression="gzip")
                grp.create_dataset("ids", data=artifact.element_ids[name], compression="gzip")
                grp.create_dataset("geometry", data=artifact.geometry[name], compression="gzip")

            grp_tables = f.create_group("tables")
            _json_blob(grp_tables, "properties", {str(k): v for k, v in artifact.properties.items()})
            _json_blob(grp_tables, "diagnostics", artifact.diagnostics)
            if artifact.associativity is not None:
                _json_blob(grp_tables, "associativity", artifact.associativity)
    except Exception as e:
        logger.exception(f"Failed to write artifact: {e}")
        raise
    logger.debug(f"Artifact written: {artifact!r}")


def read_hdf5(filepath: str) -> MeshArtifact:
    logger.info(f"Reading artifact HDF5 from: {filepath}")
    if not h5py.is_hdf5(filepath):
        msg = f"File '{filepath}' is not a valid HDF5 file."
        logger.error(msg)
        raise ValueError(msg)

    with h5py.File(filepath, "r") as f:
        if f.attrs.get("format") != ARTIFACT_FORMAT:
            raise ValueError(f"File '{filepath}' is not a {ARTIFACT_FORMAT} file.")
        stored = str(f.attrs.get("version", ""))
        if stored != APP_VERSION:
            logger.warning(f"Artifact was written by version {stored}, reading with {APP_VERSION}.")

        artifact = MeshArtifact(positions=np.array(f["nodes/positions"], dtype=FLOAT_DTYPE))
        for name, grp in f["elements"].items():
            artifact.connectivity[name] = np.array(grp["connectivity"], dtype=INDEX_DTYPE)
            artifact.element_ids[name] = np.array(grp["ids"], dtype=INDEX_DTYPE)
            artifact.geometry[name] = np.array(grp["geometry"], dtype=INDEX_DTYPE)

        tables = f["tables"]
        artifact.properties = {int(k): v for k, v in _read_blob(tables, "properties").items()}
        artifact.diagnostics = _read_blob(tables, "diagnostics")
        if "associativity" in tables:
            artifact.associativity = _read_blob(tables, "associativity")
    return artifact


def to_meshio(artifact: MeshArtifact, element_types: Optional[Iterable[ElementType | str]] = None) -> meshio.Mesh:
    """
    meshio.Mesh with cell data ``geometry_id`` and ``element_id``.

    ``element_types`` restricts the exported blocks, e.g. to the volume
    elements for formats that reject mixed dimensions.
    """
    names = [ElementType(t).value for t in element_types] if element_types is not None else list(artifact.connectivity)
    cells, geometry_ids, element_ids = [], [], []
    for name in names:
        if name not in artifact.connectivity:
            continue
        cells.append((ElementType(name).meshio_name, artifact.connectivity[name]))
        geometry_ids.append(artifact.geometry[name])
        element_ids.append(artifact.element_ids[name])
    return meshio.Mesh(
        points=artifact.positions,
        cells=cells,
        cell_data={"geometry_id": geometry_ids, "element_id": element_ids},
    )


def write_meshio(
    artifact: MeshArtifact,
    filepath: str,
    file_format: Optional[str] = None,
    element_types: Optional[Iterable[ElementType | str]] = None,
) -> None:
    logger.info(f"Writing mesh via meshio to: {filepath}")
    meshio.write(filepath, to_meshio(artifact, element_types), file_format=file_format)

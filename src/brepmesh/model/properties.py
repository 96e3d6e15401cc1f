"""
Property Set
============
Physical properties (materials, boundary conditions, loads) attached to
geometric entities or to named groups of entities.

Resolution is last-write-wins per *slot*: every property value assigns one
slot (``material``, ``bc:displacement``, ...); when several attachments
assign the same slot to the entities being resolved, the latest attachment
wins.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from enum import StrEnum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

from brepmesh.errors import PropertySetFrozen, UnknownEntity

if TYPE_CHECKING:
    from brepmesh.config import EntityRef
    from brepmesh.model.geometry import GeometryModel

logger = logging.getLogger(__name__)


class PropertyType(StrEnum):
    MATERIAL = "material"
    FIXED_DISPLACEMENT = "fixed_displacement"
    PRESCRIBED_TEMPERATURE = "prescribed_temperature"
    FORCE = "force"
    PRESSURE = "pressure"
    HEAT_FLUX = "heat_flux"


class Fixity(StrEnum):
    FIXED = "fixed"    # translations and rotations
    PINNED = "pinned"  # translations only
    FREE = "free"


# ------------------------------------------------------------------------------
# Property values
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class PropertyValue(ABC):
    """Base class of everything that can be attached to geometry."""

    @property
    @abstractmethod
    def type(self) -> PropertyType:
        pass

    @property
    @abstractmethod
    def slot(self) -> str:
        """The attribute this value assigns; resolution keeps one value per slot."""
        pass

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> PropertyValue:
        t = data.get("type")
        payload = {k: v for k, v in data.items() if k != "type"}
        match t:
            case PropertyType.MATERIAL:
                return Material(**payload)
            case PropertyType.FIXED_DISPLACEMENT:
                return FixedDisplacement(
                    fixity=Fixity(payload.get("fixity", Fixity.FIXED)),
                    values=tuple(payload.get("values", (0.0, 0.0, 0.0))),
                )
            case PropertyType.PRESCRIBED_TEMPERATURE:
                return PrescribedTemperature(**payload)
            case PropertyType.FORCE:
                return Force(vector=tuple(payload["vector"]))
            case PropertyType.PRESSURE:
                return Pressure(**payload)
            case PropertyType.HEAT_FLUX:
                return HeatFlux(**payload)
            case _:
                raise ValueError(f"Unknown property type: {t!r}")


@dataclass(frozen=True)
class Material(PropertyValue):
    """Isotropic linear material."""
    name: str
    young_modulus: float
    poisson_ratio: float
    density: float = 0.0
    unit_weight: float = 0.0
    thermal_coefficient: float = 0.0
    friction_coefficient: float = 0.0

    def __post_init__(self) -> None:
        if self.young_modulus <= 0.0:
            raise ValueError(f"Young's modulus must be positive, got {self.young_modulus}")
        if not -1.0 < self.poisson_ratio < 0.5:
            raise ValueError(f"Poisson ratio must lie in (-1, 0.5), got {self.poisson_ratio}")

    @property
    def type(self) -> PropertyType:
        return PropertyType.MATERIAL

    @property
    def slot(self) -> str:
        return "material"

    @property
    def shear_modulus(self) -> float:
        return self.young_modulus / (2.0 * (1.0 + self.poisson_ratio))


@dataclass(frozen=True)
class FixedDisplacement(PropertyValue):
    fixity: Fixity = Fixity.FIXED
    values: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    @property
    def type(self) -> PropertyType:
        return PropertyType.FIXED_DISPLACEMENT

    @property
    def slot(self) -> str:
        return "bc:displacement"

    @property
    def translations_fixed(self) -> bool:
        return self.fixity in (Fixity.FIXED, Fixity.PINNED)

    @property
    def rotations_fixed(self) -> bool:
        return self.fixity == Fixity.FIXED

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "fixity": self.fixity.value, "values": list(self.values)}


@dataclass(frozen=True)
class PrescribedTemperature(PropertyValue):
    temperature: float

    @property
    def type(self) -> PropertyType:
        return PropertyType.PRESCRIBED_TEMPERATURE

    @property
    def slot(self) -> str:
        return "bc:temperature"


@dataclass(frozen=True)
class Force(PropertyValue):
    vector: Tuple[float, float, float]

    @property
    def type(self) -> PropertyType:
        return PropertyType.FORCE

    @property
    def slot(self) -> str:
        return "load:force"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "vector": list(self.vector)}


@dataclass(frozen=True)
class Pressure(PropertyValue):
    magnitude: float

    @property
    def type(self) -> PropertyType:
        return PropertyType.PRESSURE

    @property
    def slot(self) -> str:
        return "load:pressure"


@dataclass(frozen=True)
class HeatFlux(PropertyValue):
    flux: float

    @property
    def type(self) -> PropertyType:
        return PropertyType.HEAT_FLUX

    @property
    def slot(self) -> str:
        return "load:heat_flux"


# ------------------------------------------------------------------------------
# Attachments
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class Attachment:
    """One ``attach`` call; ``order`` increases monotonically within a set."""
    order: int
    property_id: str
    value: PropertyValue
    targets: Tuple[int, ...]
    group: Optional[str] = None

    def to_record(self, geometry: GeometryModel) -> Dict[str, Any]:
        record: Dict[str, Any] = {"property_id": self.property_id, "value": self.value.to_dict()}
        if self.group is not None:
            record["group"] = self.group
        else:
            record["targets"] = [geometry.name_of(t) for t in self.targets]
        return record


@dataclass
class PropertySet:
    """
    Properties attached to one GeometryModel.

    Build with :meth:`define_group` / :meth:`attach`. A discretization run
    keeps a frozen :meth:`snapshot`, so later attachments never change a
    finished result.
    """
    geometry: GeometryModel
    groups: Dict[str, Tuple[int, ...]] = field(default_factory=dict)
    attachments: List[Attachment] = field(default_factory=list)
    frozen: bool = False
    _by_entity: Dict[int, List[Attachment]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        for attachment in self.attachments:
            self._index(attachment)

    def _index(self, attachment: Attachment) -> None:
        for target in attachment.targets:
            self._by_entity.setdefault(target, []).append(attachment)

    def _check_mutable(self) -> None:
        if self.frozen:
            raise PropertySetFrozen("PropertySet is frozen; create a new set to change properties.")

    def define_group(self, name: str, entities: Iterable[EntityRef]) -> Tuple[int, ...]:
        """Name a collection of entities; every member must exist."""
        self._check_mutable()
        ids = tuple(dict.fromkeys(self.geometry.resolve(e) for e in entities))
        self.groups[name] = ids
        logger.debug(f"Group {name!r} defined with {len(ids)} entities.")
        return ids

    def attach(
        self,
        property_id: str,
        value: PropertyValue,
        targets: Optional[Sequence[EntityRef]] = None,
        group: Optional[str] = None,
    ) -> Attachment:
        """
        Attach ``value`` to explicit entities or to a named group.

        Group membership is resolved now; later redefinitions of the group do
        not affect this attachment.
        """
        self._check_mutable()
        if (targets is None) == (group is None):
            raise ValueError("Exactly one of 'targets' or 'group' must be given.")

        if group is not None:
            if group not in self.groups:
                raise UnknownEntity(group, f"Unknown group: {group!r}")
            ids = self.groups[group]
        else:
            ids = tuple(dict.fromkeys(self.geometry.resolve(t) for t in targets))

        attachment = Attachment(
            order=len(self.attachments), property_id=property_id, value=value, targets=ids, group=group,
        )
        self.attachments.append(attachment)
        self._index(attachment)
        logger.debug(f"Attached {property_id!r} ({value.type.value}) to {len(ids)} entities.")
        return attachment

    def freeze(self) -> PropertySet:
        self.frozen = True
        return self

    def snapshot(self) -> PropertySet:
        """A frozen copy; changes made to this set afterwards do not reach it."""
        return PropertySet(
            geometry=self.geometry,
            groups=dict(self.groups),
            attachments=list(self.attachments),
            frozen=True,
        )

    def properties_of(self, entity: EntityRef) -> List[Tuple[str, PropertyValue]]:
        """Every (property_id, value) attached to ``entity``, in attachment order."""
        entity_id = self.geometry.resolve(entity)
        return [(a.property_id, a.value) for a in self._by_entity.get(entity_id, [])]

    def resolve(self, entities: Iterable[EntityRef]) -> List[Tuple[str, PropertyValue]]:
        """
        Effective properties of a set of entities: one winner per slot (the
        latest attachment), returned in attachment order.
        """
        seen: Dict[int, Attachment] = {}
        for entity in entities:
            for a in self._by_entity.get(self.geometry.resolve(entity), []):
                seen[a.order] = a

        winners: Dict[str, Attachment] = {}
        for order in sorted(seen):
            a = seen[order]
            winners[a.value.slot] = a
        return [(a.property_id, a.value) for a in sorted(winners.values(), key=lambda a: a.order)]

    def rebind(self, geometry: GeometryModel) -> PropertySet:
        """
        The same attachments re-targeted onto ``geometry`` by entity name.

        Raises UnknownEntity if a referenced name no longer exists.
        """
        def moved(ids: Tuple[int, ...]) -> Tuple[int, ...]:
            return tuple(geometry.resolve(self.geometry.name_of(i)) for i in ids)

        rebound = PropertySet(
            geometry=geometry,
            groups={name: moved(ids) for name, ids in self.groups.items()},
            attachments=[
                Attachment(a.order, a.property_id, a.value, moved(a.targets), a.group)
                for a in self.attachments
            ],
        )
        rebound.frozen = self.frozen
        logger.info(f"Rebound {len(self.attachments)} attachments onto {geometry!r}.")
        return rebound

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_records(self) -> Dict[str, Any]:
        return {
            "groups": {name: [self.geometry.name_of(i) for i in ids] for name, ids in self.groups.items()},
            "attachments": [a.to_record(self.geometry) for a in self.attachments],
        }

    @staticmethod
    def from_records(geometry: GeometryModel, records: Dict[str, Any]) -> PropertySet:
        props = PropertySet(geometry=geometry)
        for name, members in records.get("groups", {}).items():
            props.define_group(name, members)
        for rec in records.get("attachments", []):
            props.attach(
                rec["property_id"],
                PropertyValue.from_dict(rec["value"]),
                targets=rec.get("targets"),
                group=rec.get("group"),
            )
        return props

"""Typed representation of bridge resources.

This module contains:
- ResourceType, ResourceId: addressing for lights, groups and scenes
- LightAttributes, GroupAttributes, SceneAttributes: per-type attribute sets
- ResourceState: a versioned snapshot of one resource
- validate_delta: checks a partial update against the writable attributes

Brightness uses the bridge's 0-254 scale throughout; conversion to the
CLIP v2 percentage happens at the payload layer.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from core.errors import ValidationError


class ResourceType(str, Enum):
    """Kinds of resource the engine keeps in sync."""
    LIGHT = 'light'
    GROUP = 'group'
    SCENE = 'scene'

    @property
    def api_type(self) -> str:
        """CLIP v2 resource type used in endpoint paths."""
        return API_TYPES[self]


API_TYPES = {
    ResourceType.LIGHT: 'light',
    ResourceType.GROUP: 'grouped_light',
    ResourceType.SCENE: 'scene',
}


@dataclass(frozen=True, order=True)
class ResourceId:
    """Stable identifier of a resource, scoped to its type."""
    rtype: ResourceType
    rid: str

    def __str__(self) -> str:
        return f"{self.rtype.value}/{self.rid}"

    @classmethod
    def parse(cls, value: str) -> 'ResourceId':
        """Parse the 'type/rid' form produced by str().

        Raises:
            ValueError: If the type is unknown or the rid is empty
        """
        rtype, _, rid = value.partition('/')
        if not rid:
            raise ValueError(f"Expected 'type/rid', got {value!r}")
        return cls(ResourceType(rtype), rid)

    @classmethod
    def light(cls, rid: str) -> 'ResourceId':
        return cls(ResourceType.LIGHT, rid)

    @classmethod
    def group(cls, rid: str) -> 'ResourceId':
        return cls(ResourceType.GROUP, rid)

    @classmethod
    def scene(cls, rid: str) -> 'ResourceId':
        return cls(ResourceType.SCENE, rid)


@dataclass(frozen=True)
class LightAttributes:
    on: bool = False
    brightness: int = 0
    xy: tuple[float, float] | None = None
    mirek: int | None = None
    reachable: bool = True


@dataclass(frozen=True)
class GroupAttributes:
    on: bool = False
    brightness: int = 0
    lights: tuple[str, ...] = ()


@dataclass(frozen=True)
class SceneAttributes:
    active: bool = False
    speed: float = 0.0
    auto_dynamic: bool = False
    group: str | None = None


Attributes = LightAttributes | GroupAttributes | SceneAttributes

ATTRIBUTE_TYPES: dict[ResourceType, type] = {
    ResourceType.LIGHT: LightAttributes,
    ResourceType.GROUP: GroupAttributes,
    ResourceType.SCENE: SceneAttributes,
}


@dataclass(frozen=True)
class ResourceState:
    """Snapshot of one resource's observable attributes.

    The revision is assigned by the ResourceModel; states built from a poll
    carry revision 0 until the model has applied them.
    """
    id: ResourceId
    name: str
    attributes: Attributes
    revision: int = 0

    def __post_init__(self):
        expected = ATTRIBUTE_TYPES[self.id.rtype]
        if not isinstance(self.attributes, expected):
            raise TypeError(
                f"{self.id.rtype.value} state needs {expected.__name__}, "
                f"got {type(self.attributes).__name__}"
            )

    def get(self, attribute: str) -> Any:
        return getattr(self.attributes, attribute, None)

    def same_content(self, other: 'ResourceState | None') -> bool:
        """True if other has the same name and attributes, ignoring revision."""
        return (other is not None
                and self.id == other.id
                and self.name == other.name
                and self.attributes == other.attributes)

    def with_revision(self, revision: int) -> 'ResourceState':
        return replace(self, revision=revision)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be true or false, got {value!r}")
    return value


def _int_range(low: int, high: int) -> Callable[[str, Any], int]:
    def check(name: str, value: Any) -> int:
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValidationError(f"{name} must be an integer, got {value!r}")
        if not low <= value <= high:
            raise ValidationError(f"{name} must be between {low} and {high}, got {value}")
        return value
    return check


def _check_unit(name: str, value: Any) -> float:
    if not _is_number(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be between 0.0 and 1.0, got {value!r}")
    return float(value)


def _check_xy(name: str, value: Any) -> tuple[float, float]:
    if isinstance(value, Mapping):
        value = (value.get('x'), value.get('y'))
    if isinstance(value, (str, bytes)) or not isinstance(value, (tuple, list)) or len(value) != 2:
        raise ValidationError(f"{name} must be an (x, y) pair, got {value!r}")
    x = _check_unit(f"{name}.x", value[0])
    y = _check_unit(f"{name}.y", value[1])
    return (x, y)


def _check_recall(name: str, value: Any) -> bool:
    # A scene can be recalled but not deactivated through its own resource
    if value is not True:
        raise ValidationError(f"{name} can only be set to true (recall), got {value!r}")
    return True


WRITABLE_ATTRIBUTES: dict[ResourceType, dict[str, Callable[[str, Any], Any]]] = {
    ResourceType.LIGHT: {
        'on': _check_bool,
        'brightness': _int_range(0, 254),
        'xy': _check_xy,
        'mirek': _int_range(153, 500),
    },
    ResourceType.GROUP: {
        'on': _check_bool,
        'brightness': _int_range(0, 254),
    },
    ResourceType.SCENE: {
        'active': _check_recall,
        'speed': _check_unit,
        'auto_dynamic': _check_bool,
    },
}


def validate_delta(rtype: ResourceType, delta: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a partial attribute update for a resource type.

    Args:
        rtype: Type of the target resource
        delta: Mapping of attribute name to new value

    Returns:
        A normalised copy of the delta (xy as a float tuple, speed as float)

    Raises:
        ValidationError: If the delta is empty, names an unknown or read-only
            attribute, or carries an out-of-range value
    """
    if not delta:
        raise ValidationError("Command must change at least one attribute")

    writable = WRITABLE_ATTRIBUTES[rtype]
    normalised = {}
    for name, value in delta.items():
        check = writable.get(name)
        if check is None:
            readable = ATTRIBUTE_TYPES[rtype].__dataclass_fields__
            kind = 'read-only' if name in readable else 'unknown'
            raise ValidationError(f"'{name}' is a {kind} attribute for {rtype.value} resources")
        normalised[name] = check(name, value)
    return normalised

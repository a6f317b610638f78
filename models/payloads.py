"""Conversion between resource types and CLIP v2 JSON.

This module handles:
- Building the endpoint and PUT body for a command delta
- Parsing v2 resource lists (light, grouped_light, room, zone, scene,
  zigbee_connectivity) into ResourceState snapshots
"""

from collections.abc import Iterable, Mapping
from typing import Any

from models.resources import (
    GroupAttributes,
    LightAttributes,
    ResourceId,
    ResourceState,
    ResourceType,
    SceneAttributes,
)
from models.utils import create_name_lookup

# v2 resource lists each resource type is built from
POLL_ENDPOINTS: dict[ResourceType, tuple[str, ...]] = {
    ResourceType.LIGHT: ('light', 'zigbee_connectivity'),
    ResourceType.GROUP: ('grouped_light', 'room', 'zone', 'light'),
    ResourceType.SCENE: ('scene',),
}

ACTIVE_SCENE_STATES = {'static', 'dynamic_palette'}


def brightness_to_percent(brightness: int) -> float:
    """Convert 0-254 brightness to the v2 dimming percentage."""
    return round((brightness / 254) * 100, 2)


def brightness_from_percent(percent: float) -> int:
    """Convert a v2 dimming percentage to 0-254 brightness."""
    return max(0, min(254, round(percent * 254 / 100)))


def command_endpoint(resource_id: ResourceId) -> str:
    return f"/resource/{resource_id.rtype.api_type}/{resource_id.rid}"


def to_api_payload(rtype: ResourceType, delta: Mapping[str, Any]) -> dict:
    """Build the v2 PUT body for a validated delta.

    Args:
        rtype: Type of the target resource
        delta: Validated attribute delta (see models.resources.validate_delta)

    Returns:
        JSON-serialisable request body
    """
    payload: dict[str, Any] = {}

    if rtype is ResourceType.SCENE:
        if delta.get('active'):
            payload['recall'] = {'action': 'active'}
        if 'speed' in delta:
            payload['speed'] = delta['speed']
        if 'auto_dynamic' in delta:
            payload['auto_dynamic'] = delta['auto_dynamic']
        return payload

    if 'on' in delta:
        payload['on'] = {'on': delta['on']}
    if 'brightness' in delta:
        payload['dimming'] = {'brightness': brightness_to_percent(delta['brightness'])}
    if 'xy' in delta:
        x, y = delta['xy']
        payload['color'] = {'xy': {'x': x, 'y': y}}
    if 'mirek' in delta:
        payload['color_temperature'] = {'mirek': delta['mirek']}
    return payload


def _name(item: dict, fallback: str) -> str:
    return item.get('metadata', {}).get('name') or fallback


def light_from_api(item: dict, connectivity: Mapping[str, str] | None = None) -> ResourceState:
    """Parse a v2 light resource.

    Args:
        item: Entry from /resource/light
        connectivity: Device id to zigbee_connectivity status; a light whose
            device reports anything but 'connected' is unreachable
    """
    xy = item.get('color', {}).get('xy')
    device_rid = item.get('owner', {}).get('rid')
    status = (connectivity or {}).get(device_rid, 'connected')

    attributes = LightAttributes(
        on=bool(item.get('on', {}).get('on', False)),
        brightness=brightness_from_percent(item.get('dimming', {}).get('brightness', 0.0)),
        xy=(float(xy['x']), float(xy['y'])) if xy else None,
        mirek=item.get('color_temperature', {}).get('mirek'),
        reachable=status == 'connected',
    )
    return ResourceState(ResourceId.light(item['id']), _name(item, item['id']), attributes)


def group_from_api(item: dict, owner_names: Mapping[str, str],
                   owner_children: Mapping[str, list[dict]],
                   device_lights: Mapping[str, list[str]]) -> ResourceState:
    """Parse a v2 grouped_light resource.

    Args:
        item: Entry from /resource/grouped_light
        owner_names: Room and zone id to name
        owner_children: Room and zone id to its children references
        device_lights: Device id to the ids of the lights it hosts (room
            children are devices, zone children are lights)
    """
    owner_ref = item.get('owner', {})
    owner_rid = owner_ref.get('rid')

    if owner_ref.get('rtype') == 'bridge_home':
        name = 'All lights'
    else:
        name = owner_names.get(owner_rid) or f"Group {item['id'][:8]}"

    lights: list[str] = []
    for child in owner_children.get(owner_rid, []):
        if child.get('rtype') == 'light':
            lights.append(child['rid'])
        elif child.get('rtype') == 'device':
            lights.extend(device_lights.get(child['rid'], []))

    attributes = GroupAttributes(
        on=bool(item.get('on', {}).get('on', False)),
        brightness=brightness_from_percent(item.get('dimming', {}).get('brightness', 0.0)),
        lights=tuple(sorted(set(lights))),
    )
    return ResourceState(ResourceId.group(item['id']), name, attributes)


def scene_from_api(item: dict) -> ResourceState:
    """Parse a v2 scene resource."""
    attributes = SceneAttributes(
        active=item.get('status', {}).get('active') in ACTIVE_SCENE_STATES,
        speed=float(item.get('speed', 0.0)),
        auto_dynamic=bool(item.get('auto_dynamic', False)),
        group=item.get('group', {}).get('rid'),
    )
    return ResourceState(ResourceId.scene(item['id']), _name(item, item['id']), attributes)


def required_endpoints(scope: Iterable[ResourceType] | None = None) -> list[str]:
    """v2 resource lists needed to build the given resource types, in a stable order."""
    rtypes = list(ResourceType) if scope is None else list(scope)
    endpoints: list[str] = []
    for rtype in rtypes:
        for endpoint in POLL_ENDPOINTS[rtype]:
            if endpoint not in endpoints:
                endpoints.append(endpoint)
    return endpoints


def parse_resources(raw: Mapping[str, list[dict]],
                    scope: Iterable[ResourceType] | None = None) -> list[ResourceState]:
    """Build resource snapshots from fetched v2 resource lists.

    Args:
        raw: v2 resource type to the 'data' list fetched for it
        scope: Resource types to build; None builds all of them

    Returns:
        ResourceState list (revision 0) for every resource in scope
    """
    rtypes = set(ResourceType) if scope is None else set(scope)
    states: list[ResourceState] = []

    lights = raw.get('light', [])

    if ResourceType.LIGHT in rtypes:
        connectivity = {
            item.get('owner', {}).get('rid'): item.get('status', 'connected')
            for item in raw.get('zigbee_connectivity', [])
        }
        states.extend(light_from_api(item, connectivity) for item in lights)

    if ResourceType.GROUP in rtypes:
        owners = raw.get('room', []) + raw.get('zone', [])
        owner_names = create_name_lookup(owners)
        owner_children = {owner['id']: owner.get('children', []) for owner in owners}
        device_lights: dict[str, list[str]] = {}
        for light in lights:
            device_rid = light.get('owner', {}).get('rid')
            if device_rid:
                device_lights.setdefault(device_rid, []).append(light['id'])
        states.extend(
            group_from_api(item, owner_names, owner_children, device_lights)
            for item in raw.get('grouped_light', [])
        )

    if ResourceType.SCENE in rtypes:
        states.extend(scene_from_api(item) for item in raw.get('scene', []))

    return states

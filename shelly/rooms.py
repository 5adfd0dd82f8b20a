"""Shelly H&T sensor registry: one sensor per room.

Add new sensors here. Floor-plan positions are percentages (0-100) of the
floor-plan image width/height.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ShellyRoom:
    device_id: str
    name: str
    slug: str
    icon: str
    floorplan_position: tuple[int, int] | None = None
    floorplan_horizontal: bool = False


SHELLY_ROOMS: list[ShellyRoom] = [
    ShellyRoom("e4b3232f84a8", "Küche", "kueche", "Kitchen", (30, 75)),
    ShellyRoom("e4b32332e2c8", "Bad", "bad", "Bathtub", (88, 75)),
    ShellyRoom("e4b323304058", "Büro", "buero", "Computer", (42, 18)),
    ShellyRoom("e4b3233182e8", "Schlafzimmer", "schlafen", "Hotel", (63, 18)),
    ShellyRoom("XB137192906310216", "Aussen", "aussen", "WbSunny", (45, 5), True),
]


def get_room_by_slug(slug: str) -> ShellyRoom | None:
    return next((r for r in SHELLY_ROOMS if r.slug == slug), None)


def get_room_by_device_id(device_id: str) -> ShellyRoom | None:
    return next((r for r in SHELLY_ROOMS if r.device_id == device_id), None)


def get_configured_rooms() -> list[ShellyRoom]:
    return [r for r in SHELLY_ROOMS if r.device_id]


def get_all_device_ids() -> list[str]:
    return [r.device_id for r in get_configured_rooms()]


def is_room_configured(slug: str) -> bool:
    room = get_room_by_slug(slug)
    return room is not None and room.device_id != ""

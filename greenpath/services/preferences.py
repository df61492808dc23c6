"""Adaptive route preferences.

The record learns a routing bias (cool vs. fast) from the user's recent
selections and keeps a short list of frequently used places. Every function
here is pure: it takes a ``PreferenceRecord`` and returns a new one, leaving
persistence to ``PreferenceStore``.

Privacy mode turns every learning step into a no-op; accessibility settings
are the only thing that keeps changing while it is on.
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


MAX_HISTORY = 50
MAX_FREQUENT_LOCATIONS = 10
RECENT_WINDOW = 10
# one type must outnumber the other by this factor to win
PREFERENCE_RATIO = 1.5
# ~100m
LOCATION_TOLERANCE_DEG = 0.001
FONT_SIZES = ("normal", "large", "xlarge")


class RouteType(str, Enum):
    COOL = "cool"
    FAST = "fast"
    NONE = "none"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class FrequentLocation:
    name: str
    lat: float
    lon: float
    usage_count: int = 1

    def to_dict(self):
        return {"name": self.name, "lat": self.lat, "lon": self.lon, "usageCount": self.usage_count}

    @classmethod
    def from_dict(cls, data: dict) -> "FrequentLocation":
        return cls(
            name=str(data["name"]),
            lat=float(data["lat"]),
            lon=float(data["lon"]),
            usage_count=int(data.get("usageCount", 1)),
        )


@dataclass
class RouteSelection:
    start_lat: float
    start_lon: float
    end_lat: float
    end_lon: float
    selected_route: RouteType
    timestamp: str = field(default_factory=_now_iso)

    def __post_init__(self):
        self.selected_route = RouteType(self.selected_route)
        if self.selected_route is RouteType.NONE:
            raise ValueError("selected_route must be 'cool' or 'fast'")

    def to_dict(self):
        return {
            "startLat": self.start_lat,
            "startLon": self.start_lon,
            "endLat": self.end_lat,
            "endLon": self.end_lon,
            "selectedRoute": self.selected_route.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RouteSelection":
        return cls(
            start_lat=float(data["startLat"]),
            start_lon=float(data["startLon"]),
            end_lat=float(data["endLat"]),
            end_lon=float(data["endLon"]),
            selected_route=RouteType(data["selectedRoute"]),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class AccessibilityPreferences:
    high_contrast: bool = False
    font_size: str = "normal"

    def __post_init__(self):
        if self.font_size not in FONT_SIZES:
            raise ValueError(f"font_size must be one of {FONT_SIZES}")

    def to_dict(self):
        return {"highContrast": self.high_contrast, "fontSize": self.font_size}

    @classmethod
    def from_dict(cls, data: dict | None) -> "AccessibilityPreferences":
        # merged over defaults so older records missing a key still load
        data = data or {}
        defaults = cls()
        high_contrast = data.get("highContrast")
        if not isinstance(high_contrast, bool):
            high_contrast = defaults.high_contrast
        return cls(
            high_contrast=high_contrast,
            font_size=data.get("fontSize", defaults.font_size),
        )


@dataclass
class PreferenceRecord:
    preferred_route_type: RouteType = RouteType.NONE
    frequent_locations: list[FrequentLocation] = field(default_factory=list)
    route_history: list[RouteSelection] = field(default_factory=list)
    accessibility: AccessibilityPreferences = field(default_factory=AccessibilityPreferences)
    privacy_mode: bool = False
    last_city: Optional[str] = None

    def to_dict(self):
        return {
            "preferredRouteType": None if self.preferred_route_type is RouteType.NONE else self.preferred_route_type.value,
            "frequentLocations": [loc.to_dict() for loc in self.frequent_locations],
            "routeHistory": [sel.to_dict() for sel in self.route_history],
            "accessibilityPreferences": self.accessibility.to_dict(),
            "privacyMode": self.privacy_mode,
            "lastCity": self.last_city,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PreferenceRecord":
        """Build a record from its persisted form, defaulting missing fields.

        Raises ``TypeError``/``ValueError``/``KeyError`` on malformed input.
        """
        if not isinstance(data, dict):
            raise TypeError("preference record must be a JSON object")
        route_type = data.get("preferredRouteType")
        last_city = data.get("lastCity")
        return cls(
            preferred_route_type=RouteType(route_type) if route_type else RouteType.NONE,
            frequent_locations=[FrequentLocation.from_dict(d) for d in data.get("frequentLocations") or []],
            route_history=[RouteSelection.from_dict(d) for d in data.get("routeHistory") or []],
            accessibility=AccessibilityPreferences.from_dict(data.get("accessibilityPreferences")),
            privacy_mode=bool(data.get("privacyMode", False)),
            last_city=str(last_city) if last_city is not None else None,
        )


@dataclass
class UserStatistics:
    total_routes: int
    cool_count: int
    fast_count: int
    cool_pct: float
    location_count: int
    most_used_location: Optional[dict] = None

    def to_dict(self):
        return {
            "totalRoutes": self.total_routes,
            "coolRoutesCount": self.cool_count,
            "fastRoutesCount": self.fast_count,
            "coolRoutePercentage": self.cool_pct,
            "locationCount": self.location_count,
            "mostUsedLocation": self.most_used_location,
        }


def derive_preferred_route(history: list[RouteSelection], previous: RouteType) -> RouteType:
    recent = history[:RECENT_WINDOW]
    cool = sum(1 for sel in recent if sel.selected_route is RouteType.COOL)
    fast = sum(1 for sel in recent if sel.selected_route is RouteType.FAST)
    if cool > fast * PREFERENCE_RATIO:
        return RouteType.COOL
    if fast > cool * PREFERENCE_RATIO:
        return RouteType.FAST
    # mixed history keeps whatever we had
    return previous


def record_route_selection(record: PreferenceRecord, selection: RouteSelection) -> PreferenceRecord:
    if record.privacy_mode:
        return record
    history = [selection, *record.route_history][:MAX_HISTORY]
    return replace(
        record,
        route_history=history,
        preferred_route_type=derive_preferred_route(history, record.preferred_route_type),
    )


def _find_location(locations: list[FrequentLocation], lat: float, lon: float) -> Optional[FrequentLocation]:
    for loc in locations:
        if abs(loc.lat - lat) < LOCATION_TOLERANCE_DEG and abs(loc.lon - lon) < LOCATION_TOLERANCE_DEG:
            return loc
    return None


def add_frequent_location(record: PreferenceRecord, name: str, lat: float, lon: float) -> PreferenceRecord:
    if record.privacy_mode:
        return record
    locations = [replace(loc) for loc in record.frequent_locations]
    existing = _find_location(locations, lat, lon)
    if existing:
        existing.usage_count += 1
    else:
        locations.append(FrequentLocation(name=name, lat=lat, lon=lon))
    # stable sort: ties keep first-seen order
    locations.sort(key=lambda loc: loc.usage_count, reverse=True)
    return replace(record, frequent_locations=locations[:MAX_FREQUENT_LOCATIONS])


def get_recommendation(record: PreferenceRecord) -> RouteType:
    return record.preferred_route_type


def get_statistics(record: PreferenceRecord) -> UserStatistics:
    total = len(record.route_history)
    cool = sum(1 for sel in record.route_history if sel.selected_route is RouteType.COOL)
    fast = sum(1 for sel in record.route_history if sel.selected_route is RouteType.FAST)
    top = record.frequent_locations[0] if record.frequent_locations else None
    return UserStatistics(
        total_routes=total,
        cool_count=cool,
        fast_count=fast,
        cool_pct=(cool / total) * 100 if total > 0 else 0.0,
        location_count=len(record.frequent_locations),
        most_used_location={"name": top.name, "count": top.usage_count} if top else None,
    )


def set_privacy_mode(record: PreferenceRecord, enabled: bool) -> PreferenceRecord:
    if not enabled:
        return replace(record, privacy_mode=False)
    return replace(
        record,
        privacy_mode=True,
        route_history=[],
        frequent_locations=[],
        preferred_route_type=RouteType.NONE,
    )


def update_accessibility(
    record: PreferenceRecord,
    high_contrast: Optional[bool] = None,
    font_size: Optional[str] = None,
) -> PreferenceRecord:
    current = asdict(record.accessibility)
    if high_contrast is not None:
        current["high_contrast"] = high_contrast
    if font_size is not None:
        current["font_size"] = font_size
    return replace(record, accessibility=AccessibilityPreferences(**current))


def set_last_city(record: PreferenceRecord, city: str) -> PreferenceRecord:
    if record.privacy_mode:
        return record
    return replace(record, last_city=city)

import json
import logging
from dataclasses import replace
from functools import lru_cache
from typing import Optional

from ..config import get_settings
from . import preferences as engine
from .preferences import AccessibilityPreferences, PreferenceRecord, RouteSelection, RouteType, UserStatistics
from .storage import JsonFileStorage

log = logging.getLogger(__name__)

STORAGE_KEY = "greenpath_user_preferences"


class PreferenceStore:
    """Owns every read and write of the persisted preference record.

    Each action re-reads the stored record, applies one engine step and writes
    the whole record back, so a change made through another path (e.g. an
    accessibility toggle) is never overwritten by a stale copy.

    The privacy flag lives on the store instance only: persisting it would
    leave exactly the residue privacy mode promises not to leave.
    """

    def __init__(self, storage, key: str = STORAGE_KEY):
        self.storage = storage
        self.key = key
        self._privacy_mode = False

    @property
    def privacy_mode(self) -> bool:
        return self._privacy_mode

    def _read_raw(self) -> Optional[dict]:
        raw = self.storage.get_item(self.key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            log.warning("Stored preferences are not valid JSON; using defaults")
            return None
        if not isinstance(data, dict):
            log.warning("Stored preferences are not an object; using defaults")
            return None
        return data

    def load(self) -> PreferenceRecord:
        data = self._read_raw()
        record = PreferenceRecord()
        if data is not None:
            try:
                record = PreferenceRecord.from_dict(data)
            except (TypeError, ValueError, KeyError, AttributeError, ArithmeticError) as exc:
                log.warning("Failed to load user preferences (%s); using defaults", exc)
                record = PreferenceRecord()
        if self._privacy_mode or record.privacy_mode:
            record = engine.set_privacy_mode(record, True)
        return record

    def save(self, record: PreferenceRecord) -> None:
        if record.privacy_mode:
            self.storage.remove_item(self.key)
            return
        self.storage.set_item(self.key, json.dumps(record.to_dict()))

    def save_accessibility_only(self, prefs: AccessibilityPreferences) -> None:
        current = self._read_raw() or {}
        current["accessibilityPreferences"] = prefs.to_dict()
        self.storage.set_item(self.key, json.dumps(current))

    def clear(self) -> None:
        self.storage.remove_item(self.key)

    # actions

    def record_route_selection(
        self,
        start_lat: float,
        start_lon: float,
        end_lat: float,
        end_lon: float,
        selected_route: RouteType | str,
        timestamp: Optional[str] = None,
    ) -> PreferenceRecord:
        selection = RouteSelection(start_lat, start_lon, end_lat, end_lon, RouteType(selected_route))
        if timestamp:
            selection = replace(selection, timestamp=timestamp)
        record = self.load()
        if record.privacy_mode:
            return record
        record = engine.record_route_selection(record, selection)
        self.save(record)
        return record

    def add_frequent_location(self, name: str, lat: float, lon: float) -> PreferenceRecord:
        record = self.load()
        if record.privacy_mode:
            return record
        record = engine.add_frequent_location(record, name, lat, lon)
        self.save(record)
        return record

    def update_accessibility(self, high_contrast: Optional[bool] = None, font_size: Optional[str] = None) -> PreferenceRecord:
        record = engine.update_accessibility(self.load(), high_contrast, font_size)
        self.save_accessibility_only(record.accessibility)
        return record

    def set_privacy_mode(self, enabled: bool) -> PreferenceRecord:
        record = engine.set_privacy_mode(self.load(), enabled)
        self._privacy_mode = enabled
        if enabled:
            # wipe now, not on the next save
            self.clear()
            log.info("Privacy mode enabled; stored history cleared")
        return record

    def set_last_city(self, city: str) -> PreferenceRecord:
        record = self.load()
        if record.privacy_mode:
            return record
        record = engine.set_last_city(record, city)
        self.save(record)
        return record

    def clear_all_data(self) -> None:
        self.clear()
        log.info("All user preference data cleared")

    def get_recommendation(self) -> RouteType:
        return engine.get_recommendation(self.load())

    def get_statistics(self) -> UserStatistics:
        return engine.get_statistics(self.load())


@lru_cache(maxsize=1)
def get_preference_store() -> PreferenceStore:
    s = get_settings()
    return PreferenceStore(JsonFileStorage(s.preferences_dir))

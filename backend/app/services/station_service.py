"""
Station storage service - manages stations and their saved metadata sources.
"""

import json
import logging
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from app.config.settings import get_settings
from app.models import Station, StationCreate, StationHints, StationUpdate, StrategyResult

logger = logging.getLogger(__name__)


class StationService:
    def __init__(self, storage_path: str = "data/stations.json"):
        self._storage_path = Path(storage_path)
        self._stations: Dict[str, Station] = {}
        self._load()

    def _load(self):
        """Load stations from storage file."""
        if not self._storage_path.exists():
            return

        try:
            with open(self._storage_path, "r") as f:
                data = json.load(f)

            # Accept both {"stations": [...]} and a bare array
            stations_data = data.get("stations", []) if isinstance(data, dict) else data
            for item in stations_data:
                station = Station(**item)
                self._stations[station.id] = station
            logger.info(f"Loaded {len(self._stations)} stations")

        except Exception as e:
            logger.error(f"Failed to load stations: {e}")

    def _save(self):
        """Save stations to storage file."""
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self._storage_path, "w") as f:
                data = {"stations": [s.model_dump() for s in self._stations.values()]}
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save stations: {e}")

    def get_all(self) -> List[Station]:
        """Get all stations."""
        return list(self._stations.values())

    def get(self, station_id: str) -> Optional[Station]:
        """Get a station by ID."""
        return self._stations.get(station_id)

    def find_by_stream_url(self, stream_url: str) -> Optional[Station]:
        """Get the first station playing the given stream URL."""
        for station in self._stations.values():
            if station.stream_url == stream_url:
                return station
        return None

    def create(self, station: StationCreate) -> Station:
        """Create a new station."""
        station_id = str(uuid.uuid4())[:8]
        new_station = Station(id=station_id, **station.model_dump())
        self._stations[station_id] = new_station
        self._save()
        return new_station

    def update(self, station_id: str, updates: StationUpdate) -> Optional[Station]:
        """Update an existing station."""
        station = self._stations.get(station_id)
        if not station:
            return None

        update_data = updates.model_dump(exclude_unset=True)
        updated_station = station.model_copy(update=update_data)

        self._stations[station_id] = updated_station
        self._save()
        return updated_station

    def delete(self, station_id: str) -> bool:
        """Delete a station."""
        if station_id not in self._stations:
            return False

        del self._stations[station_id]
        self._save()
        return True

    def save_metadata_config(self, station_id: str, method: StrategyResult) -> Optional[Station]:
        """
        Store a working detection result as the station's metadata source.

        ICY results keep the stream URL as endpoint; everything else stores
        the endpoint that answered. The strategy config is saved as JSON.
        """
        station = self._stations.get(station_id)
        if not station:
            return None

        api_type = method.type
        if api_type == "icecast":
            api_url = station.stream_url
            metadata_format = "icy"
        else:
            api_url = method.endpoint or (method.config or {}).get("endpoint")
            metadata_format = "json" if api_type in ("json", "laut.fm", "custom") else "text"

        logger.info(f"Saving {api_type} metadata config for station {station.name}")
        return self.update(
            station_id,
            StationUpdate(
                metadata_api_url=api_url,
                metadata_api_type=api_type,
                metadata_format=metadata_format,
                metadata_fields=json.dumps(method.config) if method.config else None,
            ),
        )

    def clear_metadata_config(self, station_id: str) -> Optional[Station]:
        """Remove the station's saved metadata source."""
        if station_id not in self._stations:
            return None

        return self.update(
            station_id,
            StationUpdate(
                metadata_api_url=None,
                metadata_api_type=None,
                metadata_format=None,
                metadata_fields=None,
            ),
        )

    @staticmethod
    def hints_for(station: Station) -> StationHints:
        """Detector hints carried by a station."""
        return StationHints(
            id=station.id,
            name=station.name,
            homepage=station.homepage,
            metadata_api_url=station.metadata_api_url,
            metadata_api_type=station.metadata_api_type,
            metadata_format=station.metadata_format,
            metadata_fields=station.metadata_fields,
        )


# Singleton instance
_station_service: Optional[StationService] = None


def get_station_service() -> StationService:
    """Get the station service singleton."""
    global _station_service
    if _station_service is None:
        _station_service = StationService(get_settings().stations_storage_path)
    return _station_service

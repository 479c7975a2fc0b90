# geocoding_service.py
import logging
from typing import Optional, Tuple

import requests

from services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class GeocodingService:
    def __init__(self, api_url: str, api_key: str):
        self.api_url = api_url
        self.api_key = api_key

    def lat_lng(self, address: str) -> Tuple[float, float]:
        if not self.api_key:
            raise ExternalServiceError("geocoding", "No geocoding API key configured")
        try:
            resp = requests.get(self.api_url, params={"address": address, "key": self.api_key}, timeout=15)
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError("geocoding", str(e)) from e
        if not resp.ok:
            raise ExternalServiceError("geocoding", f"{resp.status_code} {resp.reason}", resp.status_code)
        data = resp.json()
        if data.get("status") != "OK":
            raise ExternalServiceError("geocoding", f"{data.get('status')}: {data.get('error_message', 'No details available')}")
        results = data.get("results") or []
        if not results:
            raise ExternalServiceError("geocoding", "No results found for the provided address")
        location = results[0]["geometry"]["location"]
        return float(location["lat"]), float(location["lng"])

    def try_lat_lng(self, address: str) -> Optional[Tuple[float, float]]:
        try:
            return self.lat_lng(address)
        except ExternalServiceError as e:
            logger.warning("[GEOCODE] %s (address=%r)", e, address)
            return None

# delivery_service.py
"""
Rider dispatch client (third-party logistics).

All endpoints take an `access-token` header and a JSON body; the per-store
credentials live on the Store row and fall back to the global settings.
"""
import logging
from typing import Any, Dict, Optional

import requests

from services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class RiderService:
    def __init__(self, base_url: str, access_token: str, store_id: str, timeout: int = 30):
        if not access_token:
            raise ValueError("Rider access token is required.")
        self.base_url = base_url.rstrip("/")
        self.store_id = store_id
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", "access-token": access_token}

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = requests.post(f"{self.base_url}/{path}", headers=self.headers, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError("rider", str(e)) from e
        if not resp.ok:
            raise ExternalServiceError("rider", f"Request failed with status {resp.status_code}", resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise ExternalServiceError("rider", f"Malformed JSON from {path}") from e

    def get_serviceability(self, pickup: Dict[str, Any], drop: Dict[str, Any]) -> Dict[str, Any]:
        data = self._post("getServiceability", {
            "store_id": self.store_id,
            "pickupDetails": pickup,
            "dropDetails": drop,
        })
        svc = data.get("serviceability") or {}
        if not (svc.get("locationServiceAble") and svc.get("riderServiceAble")):
            message = (data.get("payouts") or {}).get("message") or "Location not serviceable"
            raise ExternalServiceError("rider", message)
        return data

    def create_task(self, order_details: Dict[str, Any], pickup_details: Dict[str, Any],
                    drop_details: Dict[str, Any], order_items: list) -> Dict[str, Any]:
        data = self._post("createTask", {
            "storeId": self.store_id,
            "order_details": order_details,
            "pickup_details": pickup_details,
            "drop_details": drop_details,
            "order_items": order_items,
        })
        if not data.get("status"):
            raise ExternalServiceError("rider", data.get("message") or "Task creation rejected")
        return data

    def cancel_task(self, task_id: str) -> Dict[str, Any]:
        data = self._post("cancelTask", {"storeId": self.store_id, "taskId": task_id})
        if not data.get("status"):
            raise ExternalServiceError("rider", data.get("msg") or "Task cancellation rejected")
        return data


def rider_service_for_store(store, settings) -> Optional[RiderService]:
    token = getattr(store, "rider_access_token", None) or settings.rider_access_token
    store_id = getattr(store, "rider_store_id", None) or settings.rider_store_id
    if not token:
        return None
    return RiderService(settings.rider_api_url, token, store_id)

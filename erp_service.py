# erp_service.py
import logging
import time
import random
from typing import Any, Dict, Generator, List, Optional, Tuple

import requests

from services.errors import ExternalServiceError

logger = logging.getLogger(__name__)

ITEM_FIELDS = "itemId,itemName,mrp,outletId,stock,itemTimeStamp"


def build_filter(*conditions: Tuple[str, str, Any]) -> str:
    """
    ERP filter grammar: `field==value` / `field>=value` joined with commas (AND).

    >>> build_filter(("itemTimeStamp", ">=", "20240101000000"), ("outletId", "==", 7))
    'itemTimeStamp>=20240101000000,outletId==7'
    """
    parts = []
    for field, op, value in conditions:
        if op not in ("==", ">="):
            raise ValueError(f"Unsupported ERP filter operator: {op}")
        parts.append(f"{field}{op}{value}")
    return ",".join(parts)


def flatten_item_rows(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    ERP items carry a nested `stock` list, one entry per outlet. Flatten into
    one row per (itemId, outletId). Items without the nested list are taken as-is.
    """
    rows = []
    for item in items or []:
        nested = item.get("stock")
        if isinstance(nested, list):
            for entry in nested:
                rows.append({
                    "itemId": str(item.get("itemId")),
                    "itemName": item.get("itemName"),
                    "outletId": entry.get("outletId", item.get("outletId")),
                    "mrp": entry.get("mrp", item.get("mrp")),
                    "stock": entry.get("stock"),
                    "itemTimeStamp": entry.get("itemTimeStamp", item.get("itemTimeStamp")),
                })
        else:
            rows.append({
                "itemId": str(item.get("itemId")),
                "itemName": item.get("itemName"),
                "outletId": item.get("outletId"),
                "mrp": item.get("mrp"),
                "stock": nested,
                "itemTimeStamp": item.get("itemTimeStamp"),
            })
    return [r for r in rows if r["itemId"] not in (None, "None") and r["outletId"] is not None]


class ErpService:
    """
    Client for the POS/ERP REST API (items query and sales order push).
    """

    def __init__(self, base_url: str, token: str, timeout: int = 60):
        if not base_url or not token:
            raise ValueError("ERP base URL and auth token are required.")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", "X-Auth-Token": token}

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        max_retries = 4
        base_delay = 1.0
        for attempt in range(max_retries):
            try:
                resp = requests.request(method, url, headers=self.headers, timeout=self.timeout, **kwargs)
                if resp.status_code >= 500 and attempt < max_retries - 1:
                    wait = base_delay * (2 ** attempt) + random.uniform(0, 0.5)
                    logger.warning("[ERP] %s %s -> %s; retry in %.2fs", method, path, resp.status_code, wait)
                    time.sleep(wait)
                    continue
                if resp.status_code >= 400:
                    raise ExternalServiceError("erp", f"{method} {path} failed: {resp.text[:500]}", resp.status_code)
                try:
                    return resp.json()
                except ValueError as e:
                    raise ExternalServiceError("erp", f"Malformed JSON from {path}") from e
            except requests.exceptions.RequestException as e:
                if attempt < max_retries - 1:
                    wait = base_delay * (2 ** attempt) + random.uniform(0, 0.5)
                    logger.warning("[ERP] network error %s; retry in %.2fs", e, wait)
                    time.sleep(wait)
                else:
                    raise ExternalServiceError("erp", str(e)) from e
        raise ExternalServiceError("erp", "Max retries reached")

    def get_items(self, query: str, limit: int = 10000, page: Optional[int] = None) -> Dict[str, Any]:
        """
        GET /items?q=<filter>&fields=...&limit=n[&page=p]
        Returns {"items": [...], "total_pages": n}.
        """
        params = {"q": query, "fields": ITEM_FIELDS, "limit": limit}
        if page is not None:
            params["page"] = page
        data = self._request("GET", "items", params=params)
        if not isinstance(data, dict):
            raise ExternalServiceError("erp", "Unexpected items payload")
        data.setdefault("items", [])
        data.setdefault("total_pages", 1)
        return data

    def iter_item_pages(self, query: str, limit: int = 10000) -> Generator[Tuple[int, List[Dict[str, Any]], int], None, None]:
        """Yields (page, items, total_pages) until total_pages is reached."""
        page = 1
        while True:
            data = self.get_items(query, limit=limit, page=page)
            total_pages = int(data.get("total_pages") or 1)
            yield page, data.get("items") or [], total_pages
            if page >= total_pages:
                return
            page += 1

    def find_item_id(self, item_reference_code: str) -> Optional[int]:
        data = self.get_items(build_filter(("itemId", "==", item_reference_code)), limit=1)
        items = data.get("items") or []
        if not items:
            return None
        try:
            return int(items[0].get("itemId"))
        except (TypeError, ValueError):
            return None

    def push_sales_order(self, body: Dict[str, Any]) -> Dict[str, Any]:
        data = self._request("POST", "salesOrders", json=body)
        status = ((data or {}).get("result") or {}).get("status")
        if status != "success":
            raise ExternalServiceError("erp", f"Sales order rejected: {data}")
        return data

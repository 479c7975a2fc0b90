# shopify_service.py
import logging
import time
import random
from typing import List, Optional, Dict, Any

import requests

from services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


def gid_to_id(gid: Optional[str]) -> Optional[int]:
    if not gid:
        return None
    try:
        return int(str(gid).split('/')[-1])
    except (IndexError, ValueError):
        return None


def to_gid(entity: str, value: Any) -> str:
    """Build a storefront global id, leaving values that already are gids alone."""
    text = str(value)
    if text.startswith("gid://"):
        return text
    return f"gid://shopify/{entity}/{text}"


MUTATIONS = {
    "productVariantsBulkUpdate": """
      mutation UpdateVariantPrices($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
        productVariantsBulkUpdate(productId: $productId, variants: $variants) {
          productVariants { id price compareAtPrice }
          userErrors { field message }
        }
      }
    """,
    "inventorySetOnHandQuantities": """
      mutation SetOnHand($input: InventorySetOnHandQuantitiesInput!) {
        inventorySetOnHandQuantities(input: $input) {
          inventoryAdjustmentGroup {
            createdAt reason
            changes { name delta }
          }
          userErrors { field message }
        }
      }
    """,
    "orderCancel": """
      mutation OrderCancel($orderId: ID!, $reason: OrderCancelReason!, $refund: Boolean!, $restock: Boolean!, $notifyCustomer: Boolean) {
        orderCancel(orderId: $orderId, reason: $reason, refund: $refund, restock: $restock, notifyCustomer: $notifyCustomer) {
          job { id done }
          orderCancelUserErrors { field message code }
        }
      }
    """,
    "fulfillmentCreate": """
      mutation FulfillmentCreate($fulfillment: FulfillmentInput!) {
        fulfillmentCreate(fulfillment: $fulfillment) {
          fulfillment { id status }
          userErrors { field message }
        }
      }
    """,
}

GET_INVENTORY_LEVELS_QUERY = """
query InventoryItemLevels($id: ID!) {
  inventoryItem(id: $id) {
    id
    inventoryLevels(first: 5) { edges { node { location { id legacyResourceId } } } }
  }
}
"""

GET_FULFILLMENT_ORDERS_QUERY = """
query FulfillmentOrders($id: ID!) {
  order(id: $id) {
    fulfillmentOrders(first: 10) {
      edges { node { id status lineItems(first: 50) { edges { node { id remainingQuantity lineItem { id } } } } } }
    }
  }
}
"""


class ShopifyService:
    def __init__(self, store_url: str, token: str, api_version: str = "2025-04"):
        if not all([store_url, token]):
            raise ValueError("Store URL and Access Token are required.")
        self.api_endpoint = f"https://{store_url}/admin/api/{api_version}/graphql.json"
        self.headers = {"Content-Type": "application/json", "X-Shopify-Access-Token": token}

    def _execute_query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = {"query": query, "variables": variables or {}}
        max_retries = 7
        base_delay = 1.0
        for attempt in range(max_retries):
            try:
                response = requests.post(self.api_endpoint, headers=self.headers, json=payload, timeout=30)
                response.raise_for_status()
                json_response = response.json()
                if "errors" in json_response and json_response.get("errors"):
                    is_throttled = any(err.get("extensions", {}).get("code") == "THROTTLED" for err in json_response["errors"])
                    if is_throttled and attempt < max_retries - 1:
                        wait_time = base_delay * (2 ** attempt) + random.uniform(0, 1)
                        logger.warning("[SHOPIFY] throttled, retry in %.2fs", wait_time)
                        time.sleep(wait_time)
                        continue
                    raise ExternalServiceError("storefront", f"GraphQL API Error: {json_response['errors']}")
                return json_response.get("data", {}) or {}
            except (requests.exceptions.RequestException, ValueError) as e:
                if attempt < max_retries - 1:
                    wait_time = base_delay * (2 ** attempt) + random.uniform(0, 1)
                    logger.warning("[SHOPIFY] %s; retry in %.2fs", e, wait_time)
                    time.sleep(wait_time)
                else:
                    raise ExternalServiceError("storefront", str(e)) from e
        raise ExternalServiceError("storefront", "Max retries reached. Could not complete the API request.")

    def execute_mutation(self, mutation_name: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        mutation = MUTATIONS.get(mutation_name)
        if not mutation:
            raise ValueError(f"Mutation '{mutation_name}' not found.")
        return self._execute_query(mutation, variables)

    @staticmethod
    def _raise_user_errors(block: Dict[str, Any], key: str = "userErrors"):
        errors = (block or {}).get(key) or []
        if errors:
            raise ExternalServiceError("storefront", f"User errors: {errors}")

    # -------------------- bulk price / stock --------------------

    def variants_bulk_update(self, product_id: Any, variants: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        variants: [{"id": <variant gid or id>, "compareAtPrice": "123.00"}, ...]
        All variants must belong to product_id.
        """
        payload = [{**v, "id": to_gid("ProductVariant", v["id"])} for v in variants]
        data = self.execute_mutation("productVariantsBulkUpdate", {
            "productId": to_gid("Product", product_id),
            "variants": payload,
        })
        out = data.get("productVariantsBulkUpdate") or {}
        self._raise_user_errors(out)
        return out

    def set_on_hand_quantities(self, set_quantities: List[Dict[str, Any]], reason: str = "correction") -> Dict[str, Any]:
        """
        Absolute on-hand quantities.
        set_quantities: [{"inventoryItemId": id, "locationId": id, "quantity": n}, ...]
        """
        payload = [
            {
                "inventoryItemId": to_gid("InventoryItem", q["inventoryItemId"]),
                "locationId": to_gid("Location", q["locationId"]),
                "quantity": int(q["quantity"]),
            }
            for q in set_quantities
        ]
        data = self.execute_mutation("inventorySetOnHandQuantities", {
            "input": {"reason": reason, "setQuantities": payload},
        })
        out = data.get("inventorySetOnHandQuantities") or {}
        self._raise_user_errors(out)
        return out

    def get_location_id(self, inventory_item_id: Any) -> Optional[int]:
        data = self._execute_query(GET_INVENTORY_LEVELS_QUERY, {"id": to_gid("InventoryItem", inventory_item_id)})
        item = data.get("inventoryItem") or {}
        edges = ((item.get("inventoryLevels") or {}).get("edges")) or []
        if not edges:
            return None
        return gid_to_id(edges[0]["node"]["location"]["id"])

    # -------------------- orders --------------------

    def cancel_order(self, order_id: Any, reason: str = "OTHER", refund: bool = False, restock: bool = True) -> Dict[str, Any]:
        data = self.execute_mutation("orderCancel", {
            "orderId": to_gid("Order", order_id),
            "reason": reason,
            "refund": refund,
            "restock": restock,
            "notifyCustomer": False,
        })
        out = data.get("orderCancel") or {}
        self._raise_user_errors(out, "orderCancelUserErrors")
        return out

    def create_fulfillment(self, order_id: Any, line_item_ids: Optional[List[Any]] = None) -> Dict[str, Any]:
        """Fulfill the open fulfillment orders of an order, optionally limited to some line items."""
        data = self._execute_query(GET_FULFILLMENT_ORDERS_QUERY, {"id": to_gid("Order", order_id)})
        edges = (((data.get("order") or {}).get("fulfillmentOrders") or {}).get("edges")) or []
        wanted = {str(to_gid("LineItem", i)) for i in line_item_ids} if line_item_ids else None

        by_fulfillment_order = []
        for edge in edges:
            fo = edge["node"]
            if fo.get("status") not in ("OPEN", "IN_PROGRESS"):
                continue
            items = []
            for li_edge in ((fo.get("lineItems") or {}).get("edges")) or []:
                node = li_edge["node"]
                if wanted is not None and node["lineItem"]["id"] not in wanted:
                    continue
                if node.get("remainingQuantity", 0) > 0:
                    items.append({"id": node["id"], "quantity": node["remainingQuantity"]})
            if items:
                by_fulfillment_order.append({"fulfillmentOrderId": fo["id"], "fulfillmentOrderLineItems": items})

        if not by_fulfillment_order:
            raise ExternalServiceError("storefront", f"No open fulfillment orders for order {order_id}")

        data = self.execute_mutation("fulfillmentCreate", {
            "fulfillment": {"lineItemsByFulfillmentOrder": by_fulfillment_order, "notifyCustomer": False},
        })
        out = data.get("fulfillmentCreate") or {}
        self._raise_user_errors(out)
        return out

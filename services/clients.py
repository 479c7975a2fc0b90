# services/clients.py
"""
Outbound clients used by the split lifecycle, built from settings.

Every client is optional: a client whose credentials aren't configured is
left as None and the side effects depending on it are skipped.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

import models
from config import settings as default_settings
from delivery_service import RiderService, rider_service_for_store
from erp_service import ErpService
from geocoding_service import GeocodingService
from messaging_service import EmailService, SmsService
from shopify_service import ShopifyService

logger = logging.getLogger(__name__)


@dataclass
class SideEffectClients:
    erp: Optional[ErpService] = None
    shopify: Optional[ShopifyService] = None
    email: Optional[EmailService] = None
    sms: Optional[SmsService] = None
    geocoder: Optional[GeocodingService] = None
    rider_for_store: Optional[Callable[[models.Store], Optional[RiderService]]] = None

    def rider(self, store: Optional[models.Store]) -> Optional[RiderService]:
        if self.rider_for_store is None or store is None:
            return None
        return self.rider_for_store(store)


def _build(name: str, factory: Callable[[], object]):
    try:
        return factory()
    except ValueError as e:
        logger.info("[CLIENTS] %s disabled: %s", name, e)
        return None


def from_settings(settings=default_settings) -> SideEffectClients:
    return SideEffectClients(
        erp=_build("erp", lambda: ErpService(settings.erp_base_url, settings.erp_auth_token)),
        shopify=_build("storefront", lambda: ShopifyService(settings.shop_url, settings.shop_token,
                                                            settings.shopify_api_version)),
        email=_build("email", lambda: EmailService(settings.email_api_url, settings.email_api_key,
                                                   settings.email_sender)),
        sms=_build("sms", lambda: SmsService(settings.sms_api_url, settings.sms_username,
                                             settings.sms_password, settings.sms_sender_id)),
        geocoder=GeocodingService(settings.geocoding_api_url, settings.geocoding_api_key)
        if settings.geocoding_api_key else None,
        rider_for_store=lambda store: rider_service_for_store(store, settings),
    )


@lru_cache(maxsize=1)
def get_clients() -> SideEffectClients:
    """FastAPI dependency; overridden in tests."""
    return from_settings()

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = Field("sqlite:///./retail_ops.db")

    # Storefront (Shopify Admin GraphQL)
    shop_url: str = Field("example.myshopify.com")
    shop_token: str = Field("")
    shopify_api_version: str = Field("2025-04")
    shopify_webhook_secret: str = Field("")

    # ERP / POS
    erp_base_url: str = Field("https://erp.example.com/TruePOS/api/v1")
    erp_auth_token: str = Field("")
    erp_page_limit: int = Field(10000)
    erp_chunk_size: int = Field(250)
    full_sync_outlets: List[int] = Field(default_factory=lambda: [
        26311, 26314, 26867, 28450, 28451, 225, 311, 312, 314,
        11526, 11527, 56963, 56965, 57636, 57637,
    ])

    # Storefront sync
    storefront_batch_size: int = Field(50)
    incremental_lookback_minutes: int = Field(20)
    stock_calculation_mode: str = Field("primary")
    order_split_method: str = Field("primary")
    sync_timeout_seconds: int = Field(900)
    sync_lease_ttl_seconds: int = Field(900)

    # Rider dispatch
    rider_api_url: str = Field("https://riderapi.uengage.in")
    rider_access_token: str = Field("")
    rider_store_id: str = Field("")
    rider_webhook_secret: str = Field("")

    # Messaging
    email_api_url: str = Field("https://api.smtp2go.com/v3/email/send")
    email_api_key: str = Field("")
    email_sender: str = Field("hello@thepetproject.com")
    sms_api_url: str = Field("https://ngui.sendmsg.in/smpp")
    sms_username: str = Field("")
    sms_password: str = Field("")
    sms_sender_id: str = Field("")
    brand_name: str = Field("The Pet Project")
    support_phone: str = Field("7259124665")

    geocoding_api_url: str = Field("https://maps.googleapis.com/maps/api/geocode/json")
    geocoding_api_key: str = Field("")

    jwt_secret_key: str = Field("change-me-to-a-long-random-secret")
    scheduler_enabled: bool = Field(False)
    scheduler_timezone: str = Field("Asia/Kolkata")

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()

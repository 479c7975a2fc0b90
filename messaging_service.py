# messaging_service.py
import logging
from typing import Any, Dict, List

import requests

from services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class EmailService:
    """Transactional email provider (template based)."""

    def __init__(self, api_url: str, api_key: str, sender: str):
        if not api_key:
            raise ValueError("Email API key is required.")
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender

    def send_template(self, to: List[str], template_id: str, template_data: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "api_key": self.api_key,
            "to": to,
            "sender": self.sender,
            "template_id": template_id,
            "template_data": template_data,
        }
        try:
            resp = requests.post(self.api_url, json=body, timeout=30)
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError("email", str(e)) from e
        if not resp.ok:
            raise ExternalServiceError("email", f"Send failed: {resp.text[:300]}", resp.status_code)
        return resp.json()


class SmsService:
    def __init__(self, api_url: str, username: str, password: str, sender_id: str):
        if not username:
            raise ValueError("SMS username is required.")
        self.api_url = api_url
        self.username = username
        self.password = password
        self.sender_id = sender_id

    def send(self, phone: str, text: str) -> str:
        params = {
            "username": self.username,
            "password": self.password,
            "from": self.sender_id,
            "to": phone,
            "urlshortening": 1,
            "text": text,
        }
        try:
            resp = requests.post(self.api_url, params=params, timeout=30)
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError("sms", str(e)) from e
        if not resp.ok:
            raise ExternalServiceError("sms", f"Send failed: {resp.text[:300]}", resp.status_code)
        return resp.text

from __future__ import annotations

import requests
from loguru import logger

from .settings import settings


class AlertRouter:
    def __init__(self, webhook_url: str | None = None, event_types: set[str] | None = None) -> None:
        self.webhook_url = (webhook_url if webhook_url is not None else settings.alert_webhook_url).strip()
        self.timeout = settings.alert_webhook_timeout_seconds
        self.allowed_event_types = event_types if event_types is not None else {
            item.strip()
            for item in settings.alert_event_types_csv.split(",")
            if item.strip()
        }

    def should_send(self, event_type: str) -> bool:
        if not self.webhook_url:
            return False
        return event_type in self.allowed_event_types

    def send(self, event_type: str, message: str, metadata: dict) -> bool:
        if not self.should_send(event_type):
            logger.debug("Alert {} not routed: {}", event_type, message)
            return False

        payload = {
            "event_type": event_type,
            "message": message,
            "metadata": metadata,
        }
        try:
            resp = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            # delivery is best effort; the cycle report already carries the outcome
            logger.warning("Alert delivery failed for {}: {}", event_type, exc)
            return False
        logger.info("Alert sent: {} - {}", event_type, message)
        return True

"""MamoPay management API client - subscriber registry lookups.

WHAT: Looks up the gateway's subscriber id for a recurring subscription
WHY: Cancelling or inspecting a recurring payment later needs the subscriber
     id, which the charge webhook doesn't carry

REFERENCES:
    - GET /manage_api/v1/subscriptions/{subscription_id}/subscribers
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class MamoPaySubscriberRegistry:
    """Thin httpx client for the subscriber listing endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "MamoPaySubscriberRegistry":
        return cls(api_url=settings.MAMOPAY_API_URL, api_key=settings.MAMOPAY_API_KEY)

    def get_first_subscriber_id(self, subscription_id: str) -> Optional[str]:
        """Return the first subscriber's id, or None on any failure.

        Args:
            subscription_id: Gateway subscription id (e.g. "MPB-SUB-...")
        """
        if not self.api_key:
            logger.error("[MAMOPAY] MAMOPAY_API_KEY not configured, skipping subscriber lookup")
            return None

        url = f"{self.api_url}/manage_api/v1/subscriptions/{subscription_id}/subscribers"

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Accept": "application/json",
                    },
                )

            if response.status_code != 200:
                logger.warning(
                    f"[MAMOPAY] Subscriber lookup for {subscription_id} failed: "
                    f"status={response.status_code}, body={response.text}"
                )
                return None

            subscribers = response.json()
            if isinstance(subscribers, dict):
                subscribers = subscribers.get("data") or subscribers.get("subscribers") or []
            if not subscribers:
                logger.info(f"[MAMOPAY] No subscribers yet for {subscription_id}")
                return None

            subscriber_id = subscribers[0].get("id")
            return str(subscriber_id) if subscriber_id else None

        except httpx.HTTPError as e:
            logger.exception(f"[MAMOPAY] HTTP error looking up subscribers for {subscription_id}: {e}")
            return None
        except ValueError as e:
            logger.exception(f"[MAMOPAY] Invalid JSON from subscriber lookup for {subscription_id}: {e}")
            return None

"""
Home Assistant API Client for Hestia

Minimal client for reading the price sensor and calling water heater services.
Transport failures are mapped onto the device error hierarchy so the retry
policy can tell transient problems from authorization problems.
"""

import logging
from typing import Any, Optional

import requests

from .exceptions import DeviceApplyError, DeviceAuthError, DeviceUnavailableError, EntityNotFoundError

logger = logging.getLogger(__name__)


class HAClient:
    """Simple Home Assistant REST API client."""

    def __init__(self, base_url: str, token: str, timeout: float = 5):
        """Initialize HA client.

        Args:
            base_url: Home Assistant URL (e.g., "http://supervisor/core")
            token: Long-lived access token
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        })
        self.timeout = timeout

    def get_state(self, entity_id: str) -> dict[str, Any]:
        """Get current state of an entity.

        Args:
            entity_id: Entity ID (e.g., "sensor.nordpool_kwh_se3_sek")

        Returns:
            State dictionary with 'state', 'attributes', etc.

        Raises:
            EntityNotFoundError: If entity not found (also a ValueError)
            DeviceAuthError: If the token is rejected
            DeviceUnavailableError: If Home Assistant cannot be reached
            DeviceApplyError: For any other failed request
        """
        url = f"{self.base_url}/api/states/{entity_id}"
        response = self._request("GET", url, entity_id)
        return response.json()

    def call_service(self, domain: str, service: str, data: Optional[dict] = None) -> None:
        """Call a Home Assistant service.

        Args:
            domain: Service domain (e.g., "water_heater")
            service: Service name (e.g., "set_operation_mode")
            data: Service data including entity_id

        Raises:
            Same as get_state
        """
        url = f"{self.base_url}/api/services/{domain}/{service}"
        target = (data or {}).get("entity_id", f"{domain}.{service}")
        logger.debug(f"Calling {url} with data: {data}")
        response = self._request("POST", url, target, json=data or {})
        logger.info(f"Called {domain}.{service} for {target} - Response: {response.status_code}")

    def _request(self, method: str, url: str, target: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 404:
                raise EntityNotFoundError(f"Entity not found: {target}") from e
            if status in (401, 403):
                raise DeviceAuthError(f"Home Assistant rejected the token ({status}) for {target}") from e
            if status is not None and status >= 500:
                raise DeviceUnavailableError(f"Home Assistant error {status} for {target}") from e
            raise DeviceApplyError(f"Request for {target} failed: {e}") from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise DeviceUnavailableError(f"HA API unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise DeviceApplyError(f"HA API request failed: {e}") from e

"""
Uber Direct Delivery Service Implementation

Production courier integration over Uber Direct's REST API, using httpx.
Used when ENV_MODE=production or ENV_MODE=staging.

Authentication is OAuth2 client credentials. The access token is cached
and refreshed a minute before Uber says it expires.

Requirements:
    - UBER_CLIENT_ID / UBER_CLIENT_SECRET
    - UBER_CUSTOMER_ID (parent organization, used when a location has no
      sub-organization of its own)
"""

import asyncio
import logging
import time
from dataclasses import asdict
from typing import Any, Optional

import httpx

from hubplate.core.config import get_settings
from hubplate.services.delivery.base import (
    BaseDeliveryService,
    DeliveryQuote,
    DeliveryRequest,
    DeliveryResult,
)

logger = logging.getLogger(__name__)

OAUTH_SCOPE = "eats.deliveries direct.organizations"
TOKEN_REFRESH_MARGIN = 60  # seconds


class UberAuthError(Exception):
    """Uber rejected the client credentials."""


class UberDirectService(BaseDeliveryService):
    """
    Uber Direct courier service.

    Attributes:
        customer_id: Default customer (parent organization) id
        timeout: Seconds to wait for any Uber call
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        customer_id: Optional[str] = None,
        api_base_url: Optional[str] = None,
        auth_url: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize from explicit values, falling back to settings.

        Raises:
            ValueError: If the OAuth client credentials are missing
        """
        settings = get_settings()

        self._client_id = client_id or settings.uber_client_id
        self._client_secret = client_secret or settings.uber_client_secret
        self.customer_id = customer_id or settings.uber_customer_id
        self._api_base_url = (api_base_url or settings.uber_api_base_url).rstrip("/")
        self._auth_url = auth_url or settings.uber_auth_url
        self.timeout = timeout
        self._transport = transport

        if not self._client_id or not self._client_secret:
            raise ValueError(
                "UBER_CLIENT_ID and UBER_CLIENT_SECRET are required for production mode. "
                "Set them in your .env file or environment variables."
            )

        self._access_token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = asyncio.Lock()

        logger.info("UberDirectService initialized")

    @property
    def provider_name(self) -> str:
        return "uber"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================

    async def get_access_token(self) -> str:
        """
        Return a valid bearer token, fetching a new one when needed.

        Raises:
            UberAuthError: If Uber rejects the credentials
            httpx.HTTPError: On network failure
        """
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expiry:
                return self._access_token

            async with self._client() as client:
                response = await client.post(
                    self._auth_url,
                    data={
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "grant_type": "client_credentials",
                        "scope": OAUTH_SCOPE,
                    },
                )

            if response.status_code != 200:
                logger.error(f"Uber: Authentication failed - HTTP {response.status_code}")
                raise UberAuthError("Failed to authenticate with Uber Direct")

            data = response.json()
            self._access_token = data["access_token"]
            self._token_expiry = time.monotonic() + int(data.get("expires_in", 0)) - TOKEN_REFRESH_MARGIN
            logger.debug("Uber: Access token refreshed")
            return self._access_token

    async def _post(self, path: str, body: dict[str, Any]) -> httpx.Response:
        token = await self.get_access_token()
        async with self._client() as client:
            return await client.post(
                f"{self._api_base_url}{path}",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"Uber API Error: HTTP {response.status_code}"
        if isinstance(data, dict) and data.get("message"):
            return f"Uber API Error: {data['message']}"
        return f"Uber API Error: HTTP {response.status_code}"

    # =========================================================================
    # QUOTES & DELIVERIES
    # =========================================================================

    async def create_quote(
        self,
        pickup_address: str,
        dropoff_address: str,
        customer_id: Optional[str] = None,
        pickup_phone_number: Optional[str] = None,
        dropoff_phone_number: Optional[str] = None,
    ) -> DeliveryQuote:
        customer = customer_id or self.customer_id
        body = {
            "pickup_address": pickup_address,
            "dropoff_address": dropoff_address,
            "pickup_phone_number": pickup_phone_number,
            "dropoff_phone_number": dropoff_phone_number,
        }

        try:
            response = await self._post(
                f"/customers/{customer}/delivery_quotes",
                {k: v for k, v in body.items() if v is not None},
            )
        except UberAuthError as e:
            return DeliveryQuote(success=False, error_message=str(e))
        except httpx.HTTPError as e:
            logger.error(f"Uber: Quote request failed - {e}")
            return DeliveryQuote(success=False, error_message="Courier temporarily unavailable")

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(f"Uber: Quote refused - {message}")
            return DeliveryQuote(success=False, error_message=message)

        data = response.json()
        return DeliveryQuote(
            success=True,
            quote_id=data.get("id"),
            fee_cents=int(data.get("fee", 0)),
            currency=data.get("currency") or "usd",
            duration=data.get("duration"),
            pickup_duration=data.get("pickup_duration"),
            dropoff_eta=data.get("dropoff_eta"),
        )

    async def create_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        customer = request.customer_id or self.customer_id
        body = {
            "quote_id": request.quote_id,
            "order_value": request.order_value_cents,
            "pickup_name": request.pickup.name,
            "pickup_address": request.pickup.address,
            "pickup_phone_number": request.pickup.phone_number,
            "dropoff_name": request.dropoff.name,
            "dropoff_address": request.dropoff.address,
            "dropoff_phone_number": request.dropoff.phone_number,
            "manifest_items": [asdict(item) for item in request.manifest_items],
        }

        try:
            response = await self._post(f"/customers/{customer}/deliveries", body)
        except UberAuthError as e:
            return DeliveryResult(success=False, error_message=str(e))
        except httpx.HTTPError as e:
            logger.error(f"Uber: Delivery request failed - {e}")
            return DeliveryResult(success=False, error_message="Courier temporarily unavailable")

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(f"Uber: Delivery refused - {message}")
            return DeliveryResult(success=False, error_message=message)

        data = response.json()
        logger.info(f"Uber: Delivery created - {data.get('id')} - status={data.get('status')}")
        return DeliveryResult(
            success=True,
            delivery_id=data.get("id"),
            status=data.get("status"),
            tracking_url=data.get("tracking_url"),
        )

    async def health_check(self) -> bool:
        """Uber is healthy if a token can be obtained."""
        try:
            await self.get_access_token()
            return True
        except (UberAuthError, httpx.HTTPError) as e:
            logger.error(f"Uber: Health check failed - {e}")
            return False

"""Provider adapter interface — the only place provider wire formats are known.

Ledger, credit manager and synchronizer talk to providers through
``PaymentProviderAdapter`` and the normalized models below.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from payledger.payments.constants import Provider

logger = logging.getLogger(__name__)


# ── Errors ────────────────────────────────────────────────────────────────────

class ProviderAPIError(Exception):
    """Outbound provider call failed. Message reads ``Failed to <action> for <id>: <reason>``."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderNotFoundError(ProviderAPIError):
    pass


class ProviderNotConfiguredError(ProviderAPIError):
    pass


def id_of(value: Any) -> Optional[str]:
    """Provider fields hold either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


# ── Normalized models ─────────────────────────────────────────────────────────

class ProviderSubscription(BaseModel):
    provider: Provider
    id: str
    customer_id: Optional[str] = None
    status: str
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProviderCheckout(BaseModel):
    provider: Provider
    id: str
    status: Optional[str] = None
    is_complete: bool = False
    # "subscription" | "payment"
    mode: str = "payment"
    is_paid: bool = False
    subscription_id: Optional[str] = None
    # Key of the one-time order this checkout produced
    order_reference: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("userId")


# ── Adapter ───────────────────────────────────────────────────────────────────

class PaymentProviderAdapter(ABC):
    """Long-lived REST client for one provider. Close with ``aclose()`` on shutdown."""

    provider: Provider
    # Query parameter carrying the checkout id on the success redirect
    checkout_query_param: str

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._auth_headers(),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        ...

    @abstractmethod
    def _error_message(self, resp: httpx.Response) -> str:
        """Best human-readable reason from an error response."""
        ...

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        ident: str,
        **kwargs: Any,
    ) -> Any:
        if not self.enabled:
            raise ProviderNotConfiguredError(
                f"Failed to {action} for {ident}: {self.provider.value} API key is not configured"
            )
        try:
            resp = await self._http().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderAPIError(f"Failed to {action} for {ident}: {e}") from e

        if resp.status_code >= 400:
            reason = self._error_message(resp)
            message = f"Failed to {action} for {ident}: {reason}"
            lowered = reason.lower()
            if resp.status_code == 404 or "no such" in lowered or "not found" in lowered:
                raise ProviderNotFoundError(message, resp.status_code)
            raise ProviderAPIError(message, resp.status_code)

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    @abstractmethod
    async def fetch_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    @abstractmethod
    async def fetch_checkout(self, checkout_id: str) -> ProviderCheckout:
        ...

    @abstractmethod
    async def lookup_customer_user_id(self, customer_id: str) -> Optional[str]:
        """``userId`` stored on the provider's customer record, if any."""
        ...

    @abstractmethod
    async def find_plan_id(self, repo, subscription: ProviderSubscription) -> Optional[str]:
        """Local pricing plan for the subscription's price/product."""
        ...

    async def find_user_id(self, repo, customer_id: Optional[str]) -> Optional[str]:
        """Our user behind a provider customer; the customer record's ``userId`` by default."""
        if not customer_id:
            return None
        try:
            return await self.lookup_customer_user_id(customer_id)
        except ProviderNotFoundError:
            logger.warning("%s customer %s not found while resolving user", self.provider.value, customer_id)
            return None

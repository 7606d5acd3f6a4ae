from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from onboarding.core.errors import CollaboratorError, ProvisioningError
from onboarding.core.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ProvisionedAddress:
    address: str
    public_key: Optional[str] = None
    derivation_index: Optional[int] = None


class AddressProvisioner(Protocol):
    def provision(self, crypto_type: str, index: int) -> ProvisionedAddress: ...


class Sweeper(Protocol):
    def sweep(self, plan: dict[str, Any], timeout: float) -> str: ...


@dataclass
class FeedPage:
    events: list[dict[str, Any]] = field(default_factory=list)
    # where the next fetch resumes; None keeps the previous one
    cursor: Optional[str] = None


class DepositFeed(Protocol):
    def fetch(self, cursor: Optional[str], timeout: float) -> FeedPage: ...


class _HttpCollaborator:
    def __init__(self, base: str, token: str = "", client: httpx.Client | None = None) -> None:
        self.base = (base or "").strip().rstrip("/")
        if not self.base:
            raise CollaboratorError(f"{type(self).__name__}: base URL missing", code="collaborator_not_configured")
        self.token = (token or "").strip()
        self.client = client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, timeout: float | None = None, **kwargs) -> Any:
        url = f"{self.base}{path}"
        try:
            r = self.client.request(method, url, headers=self._headers(), timeout=timeout, **kwargs)
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException as e:
            raise CollaboratorError(f"{method} {path} timed out", code="collaborator_timeout") from e
        except (httpx.HTTPError, ValueError) as e:
            raise CollaboratorError(f"{method} {path} failed: {e}") from e
        if isinstance(data, dict) and data.get("ok") is False:
            raise CollaboratorError(f"{method} {path} not ok: {data!r}")
        return data


class HttpAddressProvisioner(_HttpCollaborator):
    """Asks the key-holding address service for a fresh deposit address."""

    def __init__(self, base: str | None = None, client: httpx.Client | None = None) -> None:
        super().__init__(base if base is not None else settings.ADDRESS_SERVICE_URL, client=client)

    def provision(self, crypto_type: str, index: int) -> ProvisionedAddress:
        try:
            data = self._request("POST", "/addresses", json={"crypto_type": crypto_type, "index": index})
        except CollaboratorError as e:
            raise ProvisioningError(f"cannot provision {crypto_type} address: {e.message}") from e
        address = (data.get("address") or "").strip()
        if not address:
            raise ProvisioningError(f"address service returned no address for {crypto_type}")
        return ProvisionedAddress(
            address=address,
            public_key=data.get("public_key"),
            derivation_index=data.get("index", index),
        )


class KeychainClient(_HttpCollaborator):
    """Sign-and-broadcast collaborator. Returns the blockchain transaction id."""

    def __init__(self, base: str | None = None, token: str | None = None, client: httpx.Client | None = None) -> None:
        super().__init__(
            base if base is not None else settings.KEYCHAIN_URL,
            token if token is not None else settings.KEYCHAIN_TOKEN,
            client=client,
        )

    def sweep(self, plan: dict[str, Any], timeout: float) -> str:
        data = self._request("POST", "/consolidations", timeout=timeout, json=plan)
        tx = (data.get("tx_hash") or data.get("txid") or "").strip()
        if not tx:
            raise CollaboratorError(f"keychain returned no tx hash: {data!r}")
        return tx


class HttpDepositFeed(_HttpCollaborator):
    """Poll source for deposit events produced by the external chain watchers."""

    def __init__(self, base: str | None = None, token: str | None = None, client: httpx.Client | None = None) -> None:
        super().__init__(
            base if base is not None else settings.MONITOR_FEED_URL,
            token if token is not None else settings.MONITOR_FEED_TOKEN,
            client=client,
        )

    def fetch(self, cursor: Optional[str], timeout: float) -> FeedPage:
        params = {"cursor": cursor} if cursor else {}
        data = self._request("GET", "/events", timeout=timeout, params=params)
        if isinstance(data, dict):
            nxt = data.get("cursor") or data.get("next_cursor") or data.get("nextCursor")
            return FeedPage(
                events=data.get("events") or data.get("result") or [],
                cursor=str(nxt) if nxt is not None else None,
            )
        return FeedPage(events=data or [])

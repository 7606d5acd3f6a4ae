"""Collaborator dependencies; tests swap them through ``app.dependency_overrides``."""

from __future__ import annotations

from functools import lru_cache

from onboarding.clients import AddressProvisioner, HttpAddressProvisioner, KeychainClient, Sweeper
from onboarding.pricing.price_feed import PriceFeed, get_price_feed


@lru_cache(maxsize=1)
def get_provisioner() -> AddressProvisioner:
    return HttpAddressProvisioner()


@lru_cache(maxsize=1)
def get_sweeper() -> Sweeper:
    return KeychainClient()


def get_prices() -> PriceFeed:
    return get_price_feed()

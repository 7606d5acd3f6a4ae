from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from onboarding.assets import ASSETS, AssetCapability
from onboarding.core.errors import CollaboratorError
from onboarding.core.settings import settings
from onboarding.pricing.price_feed import PriceFeed, PriceQuote

logger = logging.getLogger(__name__)

USD_PLACES = Decimal("0.000001")


@dataclass(frozen=True)
class AssetPrice:
    symbol: str
    price_usd: Decimal
    transfer_fee: Decimal
    transfer_fee_usd: Decimal
    surcharge_usd: Decimal
    final_cost_usd: Decimal
    amount_needed: Decimal
    total_amount: Decimal
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "price_usd": str(self.price_usd),
            "amount_needed": str(self.amount_needed),
            "transfer_fee": str(self.transfer_fee),
            "total_amount": str(self.total_amount),
            "network_fee_surcharge_usd": str(self.surcharge_usd),
            "final_cost_usd": str(self.final_cost_usd),
            "source": self.source,
        }


def price_asset(asset: AssetCapability, quote: PriceQuote) -> AssetPrice:
    """What a channel on ``asset`` costs at ``quote``.

    The USD price is the account price plus NETWORK_FEE_SURCHARGE of one
    average transfer; the crypto amount also carries the transfer fee itself
    when CHARGE_TRANSFER_FEE is on.
    """
    if quote.usd <= 0:
        raise CollaboratorError(f"non-positive {asset.symbol} price {quote.usd}", code="price_feed")
    fee_usd = asset.transfer_fee * quote.usd
    surcharge = (fee_usd * Decimal(settings.NETWORK_FEE_SURCHARGE)).quantize(USD_PLACES, rounding=ROUND_HALF_UP)
    final_cost = (Decimal(settings.ACCOUNT_PRICE_USD) + surcharge).quantize(USD_PLACES, rounding=ROUND_HALF_UP)
    needed = asset.quantize(final_cost / quote.usd)
    fee = asset.transfer_fee if settings.CHARGE_TRANSFER_FEE else Decimal("0")
    total = max(asset.quantize(needed + fee), asset.min_amount)
    return AssetPrice(
        symbol=asset.symbol,
        price_usd=quote.usd,
        transfer_fee=fee,
        transfer_fee_usd=fee_usd,
        surcharge_usd=surcharge,
        final_cost_usd=final_cost,
        amount_needed=needed,
        total_amount=total,
        source=quote.source,
    )


def pricing_table(feed: PriceFeed) -> dict[str, Any]:
    """Current price of a channel on every supported asset.

    Assets the feed cannot quote are listed under ``unavailable``.
    """
    rates: dict[str, Any] = {}
    costs: dict[str, Any] = {}
    unavailable: dict[str, str] = {}
    for symbol, asset in ASSETS.items():
        try:
            p = price_asset(asset, feed.quote(symbol))
        except CollaboratorError as e:
            logger.warning("No price for %s: %s", symbol, e.message)
            unavailable[symbol] = e.message
            continue
        rates[symbol] = p.to_dict()
        costs[symbol] = {"avg_fee_crypto": str(asset.transfer_fee), "avg_fee_usd": str(p.transfer_fee_usd)}
    return {
        "ok": True,
        "account_creation_cost_usd": str(settings.ACCOUNT_PRICE_USD),
        "network_fee_surcharge": str(settings.NETWORK_FEE_SURCHARGE),
        "crypto_rates": rates,
        "transfer_costs": costs,
        "supported_currencies": list(ASSETS),
        "unavailable": unavailable,
    }

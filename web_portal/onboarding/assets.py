from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_CEILING
from typing import Pattern

from onboarding.core.errors import ValidationError

PRIORITIES = ("low", "medium", "high")

# fee model kinds
UTXO = "utxo"
EVM = "evm"
SOLANA = "solana"

UTXO_BASE_BYTES = 10
UTXO_INPUT_BYTES = 148
UTXO_OUTPUT_BYTES = 34
EVM_BASE_GAS = 21000
EVM_GAS_PER_INPUT = 5000
SOL_FEE_PER_SIGNATURE = 5000
STORAGE_DECIMALS = 8


@dataclass(frozen=True)
class AssetCapability:
    symbol: str
    name: str
    decimals: int
    confirmations_required: int
    min_amount: Decimal
    fee_model: str
    # smallest-unit rate per tier: sat/byte, duffs/byte, gwei, lamports
    fee_rates: dict = field(default_factory=dict)
    fee_unit_decimals: int = 0
    address_pattern: Pattern = re.compile(r".+")
    explorer_tx_url: str = ""
    coingecko_id: str = ""
    # average cost of one outbound transfer, whole asset units
    transfer_fee: Decimal = Decimal("0")
    supports_memo: bool = False
    memo_required: bool = False

    def quantize(self, value: Decimal, rounding=ROUND_CEILING) -> Decimal:
        # stored amounts carry at most STORAGE_DECIMALS places
        places = min(self.decimals, STORAGE_DECIMALS)
        return Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=rounding)

    def is_valid_address(self, address: str) -> bool:
        return bool(address) and bool(self.address_pattern.fullmatch(address.strip()))

    def estimate_fee(self, inputs: int) -> dict[str, Decimal]:
        """Consolidation fee per priority tier, in whole asset units."""
        inputs = max(int(inputs), 0)
        if self.fee_model == UTXO:
            units = UTXO_BASE_BYTES + UTXO_INPUT_BYTES * inputs + UTXO_OUTPUT_BYTES
        elif self.fee_model == EVM:
            units = EVM_BASE_GAS + EVM_GAS_PER_INPUT * inputs
        else:
            units = inputs
        scale = Decimal(1).scaleb(-self.fee_unit_decimals)
        return {tier: Decimal(units * self.fee_rates[tier]) * scale for tier in PRIORITIES}

    def instructions(self) -> dict:
        if self.fee_model == UTXO:
            return {
                "method": "UTXO_CONSOLIDATION",
                "description": "One transaction, every source address as an input, one output to the destination",
            }
        if self.fee_model == EVM:
            return {
                "method": "SEQUENTIAL_TRANSFERS",
                "description": "One transfer per source address to the destination, nonce ordered",
            }
        return {
            "method": "BATCH_TRANSFER",
            "description": "Batched transfers signed by every source address",
        }


_EVM_ADDRESS = re.compile(r"0x[0-9a-fA-F]{40}")

ASSETS: dict[str, AssetCapability] = {
    a.symbol: a
    for a in (
        AssetCapability(
            symbol="BTC",
            name="Bitcoin",
            decimals=8,
            confirmations_required=2,
            min_amount=Decimal("0.00001"),
            fee_model=UTXO,
            fee_rates={"low": 1, "medium": 5, "high": 10},
            fee_unit_decimals=8,
            address_pattern=re.compile(r"(bc1[02-9ac-hj-np-z]{11,71}|[13][1-9A-HJ-NP-Za-km-z]{25,34})"),
            explorer_tx_url="https://blockstream.info/tx/{tx}",
            coingecko_id="bitcoin",
            transfer_fee=Decimal("0.00002"),
            supports_memo=True,
        ),
        AssetCapability(
            symbol="ETH",
            name="Ethereum",
            decimals=18,
            confirmations_required=2,
            min_amount=Decimal("0.0001"),
            fee_model=EVM,
            fee_rates={"low": 20, "medium": 50, "high": 100},
            fee_unit_decimals=9,
            address_pattern=_EVM_ADDRESS,
            explorer_tx_url="https://etherscan.io/tx/{tx}",
            coingecko_id="ethereum",
            transfer_fee=Decimal("0.002"),
        ),
        AssetCapability(
            symbol="BNB",
            name="BNB Smart Chain",
            decimals=18,
            confirmations_required=3,
            min_amount=Decimal("0.001"),
            fee_model=EVM,
            fee_rates={"low": 20, "medium": 50, "high": 100},
            fee_unit_decimals=9,
            address_pattern=_EVM_ADDRESS,
            explorer_tx_url="https://bscscan.com/tx/{tx}",
            coingecko_id="binancecoin",
            transfer_fee=Decimal("0.0005"),
        ),
        AssetCapability(
            symbol="MATIC",
            name="Polygon",
            decimals=18,
            confirmations_required=10,
            min_amount=Decimal("0.01"),
            fee_model=EVM,
            fee_rates={"low": 20, "medium": 50, "high": 100},
            fee_unit_decimals=9,
            address_pattern=_EVM_ADDRESS,
            explorer_tx_url="https://polygonscan.com/tx/{tx}",
            coingecko_id="matic-network",
            transfer_fee=Decimal("0.01"),
        ),
        AssetCapability(
            symbol="SOL",
            name="Solana",
            decimals=9,
            confirmations_required=1,
            min_amount=Decimal("0.001"),
            fee_model=SOLANA,
            fee_rates={"low": SOL_FEE_PER_SIGNATURE, "medium": SOL_FEE_PER_SIGNATURE, "high": SOL_FEE_PER_SIGNATURE},
            fee_unit_decimals=9,
            address_pattern=re.compile(r"[1-9A-HJ-NP-Za-km-z]{32,44}"),
            explorer_tx_url="https://solscan.io/tx/{tx}",
            coingecko_id="solana",
            transfer_fee=Decimal("0.000005"),
            supports_memo=True,
        ),
        AssetCapability(
            symbol="DASH",
            name="Dash",
            decimals=8,
            confirmations_required=6,
            min_amount=Decimal("0.00001"),
            fee_model=UTXO,
            fee_rates={"low": 100, "medium": 500, "high": 1000},
            fee_unit_decimals=8,
            address_pattern=re.compile(r"X[1-9A-HJ-NP-Za-km-z]{33}"),
            explorer_tx_url="https://insight.dash.org/insight/tx/{tx}",
            coingecko_id="dash",
            transfer_fee=Decimal("0.0001"),
        ),
    )
}


def get_asset(symbol: str) -> AssetCapability:
    key = (symbol or "").strip().upper()
    asset = ASSETS.get(key)
    if asset is None:
        raise ValidationError(f"unsupported crypto type: {symbol!r}", code="unsupported_asset")
    return asset


def explorer_url(symbol: str, tx_hash: str | None) -> str | None:
    if not tx_hash:
        return None
    return get_asset(symbol).explorer_tx_url.format(tx=tx_hash)

#!/usr/bin/env python3
"""
Address helpers and the known-service exclusion list.

Every address used as a comparison value or map key goes through
canonicalize() first, so 0xABC... and 0xabc... are the same entity.
"""

import re
from typing import FrozenSet, Iterable, Optional

ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
BARE_HEX_RE = re.compile(r"^[0-9a-f]{40}$")

# Exchanges and services that touch almost every wallet. Counterparties in
# this list are dropped from correlation results regardless of count.
KNOWN_SERVICES = {
    # Binance
    "0x28c6c06298d514db089934071355e5743bf21d60": "Binance 14",
    "0xdfd5293d8e347dfe59e90efd55b2956a1343963d": "Binance 16",
    "0x3f5ce5fbfe3e9af3971dd833d26ba9b5c936f0be": "Binance 1",
    "0xd551234ae421e3bcba99a0da6d736074f22192ff": "Binance 2",
    "0x564286362092d8e7936f0549571a803b203aaced": "Binance 3",
    "0x0681d8db095565fe8a346fa0277bffde9c0edbbf": "Binance 4",
    "0xfe9e8709d3215310075d67e3ed32a380ccf451c8": "Binance 5",
    "0x4e9ce36e442e55ecd9025b9a6e0d88485d628a67": "Binance 6",
    "0xbe0eb53f46cd790cd13851d5eff43d12404d33e8": "Binance 7",
    "0xf977814e90da44bfa03b6295a0616a897441acec": "Binance 8",
    # Coinbase
    "0xeb2629a2734e272bcc07bda959863f316f4bd4cf": "Coinbase 6",
    "0x503828976d22510aad0201ac7ec88293211d23da": "Coinbase 2",
    "0xddfabcdc4d8ffc6d5beaf154f18b778f892a0740": "Coinbase 3",
    # Kraken
    "0x4ad64983349c49defe8d7a4686202d24b25f366f": "Kraken",
    "0x267be1c1d684f78cb4f6a176c4911b741e4ffdc0": "Kraken 4",
    # Gemini
    "0x701c484bfb40ac628afa487b6082f084b14af0bd": "Gemini",
    "0xd24400ae8bfebb18ca49be86258a3c749cf46853": "Gemini 1",
    # KuCoin
    "0x05f51aab068caa6ab7eeb672f88c180f67f17ec7": "KuCoin",
    # DEX routers and aggregators
    "0x11111112542d85b3ef69ae05771c2dccff4faa26": "1inch V3",
    "0x1111111254fb6c44bac0bed2854e76f90643097d": "1inch V4",
    "0x1111111254eeb25477b68fb85ed929f73a960582": "1inch V5",
    "0x7a250d5630b4cf539739df2c5dacb4c659f2488d": "Uniswap V2 Router",
    "0x68b3465833fb72a70ecdf485e0e4c7bd8665fc45": "Uniswap SwapRouter02",
    "0xd9e1ce17f2641f24ae83637ab66a2cca9c378b9f": "Sushiswap Router",
    "0x881d40237659c251811cec9c364ef91dc08d300c": "Metamask Swap Router",
    # Non-custodial contracts and tokens
    "0x00000000219ab540356cbb839cbe05303d7705fa": "ETH2 Deposit Contract",
    "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2": "WETH",
    "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": "USDC",
    "0xdac17f958d2ee523a2206206994597c13d831ec7": "USDT",
    "0x6b175474e89094c44da98b954eedeac495271d0f": "DAI",
    # Bridges and defunct exchanges
    "0x8315177ab297ba92a06054ce80a67ed4dbd7ed3a": "Arbitrum Bridge",
    "0x2faf487a4414fe77e2327f0bf4ae2a264a776ad2": "FTX Exchange",
    # Market makers
    "0x3883f5e181cacd4fdf2a2d6724999b12ce1dc93c": "Theta",
    "0x08638ef1a205be6762a8b935f5da9b700cf7322c": "Wintermute",
}


def canonicalize(address: str) -> str:
    """
    Lowercase an address and make sure it carries the 0x prefix.

    Idempotent, and canonicalize(a) == canonicalize(a.upper()).
    """
    addr = (address or "").strip().lower()
    if BARE_HEX_RE.match(addr):
        addr = "0x" + addr
    return addr


def is_valid_address(address: str) -> bool:
    return bool(ADDRESS_RE.match(canonicalize(address)))


def label_for(address: str) -> Optional[str]:
    return KNOWN_SERVICES.get(canonicalize(address))


def build_exclusion_set(include_known_services: bool = True,
                        extra: Iterable[str] = ()) -> FrozenSet[str]:
    """Combine the built-in service list with caller supplied addresses."""
    excluded = set(KNOWN_SERVICES) if include_known_services else set()
    excluded.update(canonicalize(a) for a in extra if a)
    return frozenset(excluded)


def short(address: str) -> str:
    """Shortened address for log lines."""
    return f"{address[:10]}..." if len(address) > 12 else address

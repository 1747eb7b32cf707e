#!/usr/bin/env python3
"""
Address Snapshot - latest block, balance and nonce for an address per network.

Names are resolved with a static lookup table only (no on-chain ENS calls).
Add entries through ENS_OVERRIDES, e.g.

    ENS_OVERRIDES="alice.eth=0x1234...,bob.eth=0xabcd..."

Usage:
    # Snapshot an address on mainnet and sepolia
    python3 scripts/address_snapshot.py 0x36eb4b67b246ed82504144642f78e38f39b7c7a9

    # Snapshot a name from the lookup table, save JSON
    python3 scripts/address_snapshot.py quicknode.eth -o snapshot.json

Environment:
    ETH_RPC_URL      - Mainnet JSON-RPC endpoint (default: https://eth.llamarpc.com)
    SEPOLIA_RPC_URL  - Sepolia JSON-RPC endpoint
    ENS_OVERRIDES    - Extra name=address pairs for the lookup table
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import requests

from addresses import canonicalize, is_valid_address
from report_io import write_json
from settings import load_env, setup_logging

log = logging.getLogger(__name__)

DEFAULT_NETWORKS = ("mainnet", "sepolia")

RPC_DEFAULTS = {
    "mainnet": ("ETH_RPC_URL", "https://eth.llamarpc.com"),
    "sepolia": ("SEPOLIA_RPC_URL", "https://ethereum-sepolia-rpc.publicnode.com"),
}

# Static name table used in place of on-chain ENS resolution
KNOWN_NAMES = {
    "quicknode.eth": "0x36eb4b67b246ed82504144642f78e38f39b7c7a9",
}


def name_table() -> Dict[str, str]:
    table = dict(KNOWN_NAMES)
    for pair in os.getenv("ENS_OVERRIDES", "").split(","):
        if "=" not in pair:
            continue
        name, address = pair.split("=", 1)
        if is_valid_address(address):
            table[name.strip().lower()] = canonicalize(address)
        else:
            log.warning("Ignoring ENS_OVERRIDES entry with invalid address: %s", pair)
    return table


def resolve_name(name: str, table: Optional[Dict[str, str]] = None) -> Optional[str]:
    """Return the address for a name, or the input itself if it already is one."""
    if is_valid_address(name):
        return canonicalize(name)
    table = name_table() if table is None else table
    address = table.get(name.strip().lower())
    if address:
        log.info("Address resolved for %s: %s", name, address)
    else:
        log.warning("No address known for %s", name)
    return address


def rpc_url(network: str) -> str:
    env_var, default = RPC_DEFAULTS[network]
    return os.getenv(env_var, default)


class RpcClient:
    """Minimal JSON-RPC 2.0 client for one network."""

    def __init__(self, url: str, session: Optional[requests.Session] = None,
                 timeout: float = 10.0):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout
        self._next_id = 1

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Returns the result field, or None on RPC or transport errors."""
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params or [],
        }
        self._next_id += 1

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            log.warning("RPC %s to %s failed: %s", method, self.url, e)
            return None

        if not isinstance(data, dict):
            log.warning("RPC %s returned unexpected body: %r", method, data)
            return None
        if data.get("error"):
            log.warning("RPC %s returned error: %s", method, json.dumps(data["error"]))
            return None
        return data.get("result")

    def latest_block(self) -> Optional[int]:
        result = self.call("eth_blockNumber")
        return int(result, 16) if result else None

    def balance_eth(self, address: str, block: Optional[int] = None) -> Optional[float]:
        block_param = hex(block) if block is not None else "latest"
        result = self.call("eth_getBalance", [address, block_param])
        return int(result, 16) / 1e18 if result else None

    def transaction_count(self, address: str) -> Optional[int]:
        result = self.call("eth_getTransactionCount", [address, "latest"])
        return int(result, 16) if result else None


def snapshot(address: str, networks=DEFAULT_NETWORKS,
             clients: Optional[Dict[str, RpcClient]] = None) -> Dict[str, dict]:
    """
    Latest block, balance and transaction count per network.

    Networks whose block number cannot be read are left out.
    """
    address = canonicalize(address)
    results = {}
    for network in networks:
        client = (clients or {}).get(network) or RpcClient(rpc_url(network))
        log.info("Querying data on network %s...", network)

        latest_block = client.latest_block()
        if latest_block is None:
            log.warning("Skipping additional queries for %s due to previous errors", network)
            continue

        results[network] = {
            "latest_block": latest_block,
            "balance": client.balance_eth(address, latest_block),
            "tx_count": client.transaction_count(address),
        }
    return results


def main():
    parser = argparse.ArgumentParser(description="Address snapshot across networks")
    parser.add_argument("address", help="Address or known name")
    parser.add_argument("--networks", default=",".join(DEFAULT_NETWORKS),
                        help=f"Comma separated networks (default: {','.join(DEFAULT_NETWORKS)})")
    parser.add_argument("-o", "--output", help="Save JSON to this path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    setup_logging(args.verbose)
    load_env()

    networks = [n.strip() for n in args.networks.split(",") if n.strip()]
    unknown = [n for n in networks if n not in RPC_DEFAULTS]
    if unknown:
        parser.error(f"Unknown network(s): {', '.join(unknown)}")

    address = resolve_name(args.address)
    if not address:
        log.error("Could not resolve %s", args.address)
        sys.exit(1)

    results = snapshot(address, networks)

    for network, data in results.items():
        print(f"\n{network}:")
        print(f"  Latest block: {data['latest_block']}")
        print(f"  Balance:      {data['balance']} ETH")
        print(f"  Tx count:     {data['tx_count']}")

    if args.output:
        write_json(args.output, {"address": address, "networks": results})
        print(f"\nData saved to {args.output}")
    else:
        print(json.dumps({"address": address, "networks": results}, indent=2))


if __name__ == "__main__":
    main()

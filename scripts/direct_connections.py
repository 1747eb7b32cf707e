#!/usr/bin/env python3
"""
Direct Connection Detector

Checks each input address for transactions made directly with one target
address, such as an exchange deposit address. Normal, internal
and ERC20 token transfers are all scanned, in both directions.

With --bidirectional the target's own history is also fetched (once per run)
and scanned for each input address. This catches transfers that are missing
from the input address's truncated history. Transactions found from both
sides are reported once.

Usage:
    # Check every address in a CSV against a target
    python3 scripts/direct_connections.py addresses.csv --target 0x1234...

    # Single address
    python3 scripts/direct_connections.py --address 0xabcd... --target 0x1234...

    # Also scan the target's own history
    python3 scripts/direct_connections.py addresses.csv --target 0x1234... --bidirectional

Output: results/direct_connections.csv with participant code, wallet,
transaction hash, direction and amount. Rewritten after every batch.
The log is also appended to results/scan.log.

Environment:
    ETHERSCAN_API_KEY - Required for transaction history
    TARGET_ADDRESS    - Default target when --target is omitted
"""

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from addresses import canonicalize, short
from batch_scheduler import BatchScheduler, setup_signal_handlers
from counterparties import CounterpartyObservation, Direction, format_amount, observe
from etherscan_client import EtherscanClient
from report_io import InputRecord, InputSourceMissing, load_addresses, records_from_args, write_csv
from settings import RunConfig, add_log_file, setup_logging
from tx_history import TransactionHistory, TransactionHistoryFetcher, TransactionRecord

log = logging.getLogger(__name__)

DIRECT_CONNECTIONS_HEADER = [
    "PARTICIPANT_CODE", "WALLET", "TX_HASH", "DIRECTION", "AMOUNT", "TIMESTAMP", "TYPE",
]


@dataclass(frozen=True)
class DirectConnection:
    participant_code: str
    observation: CounterpartyObservation

    @property
    def wallet(self) -> str:
        return self.observation.source

    @property
    def direction(self) -> Direction:
        return self.observation.direction

    @property
    def amount(self) -> str:
        return format_amount(self.observation.record, self.observation.eth_value)

    def to_row(self) -> list:
        obs = self.observation
        return [
            self.participant_code,
            obs.source,
            obs.record.hash,
            obs.direction.value,
            self.amount,
            obs.iso_timestamp,
            obs.record.kind.value,
        ]


def find_direct_connections(source: str, records: Iterable[TransactionRecord],
                            target: str) -> List[CounterpartyObservation]:
    """Observations from `records` where the other side of the transfer is `target`."""
    source = canonicalize(source)
    target = canonicalize(target)
    found = []
    for record in records:
        obs = observe(source, record)
        if obs is not None and obs.counterparty == target:
            found.append(obs)
    return found


class DirectConnectionFinder:
    """Per-address direct connection scan against a fixed target."""

    def __init__(self, fetcher: TransactionHistoryFetcher, target: str,
                 bidirectional: bool = False):
        self.fetcher = fetcher
        self.target = canonicalize(target)
        self.bidirectional = bidirectional
        self._target_history: Optional[TransactionHistory] = None

    @property
    def target_history(self) -> TransactionHistory:
        if self._target_history is None:
            # first fetched right after a source's queries; keep the request pacing
            self.fetcher.sleep(self.fetcher.config.request_delay)
            log.info("Fetching target history for %s", self.target)
            self._target_history = self.fetcher.fetch(self.target)
        return self._target_history

    def check(self, item: InputRecord) -> List[DirectConnection]:
        source = canonicalize(item.address)
        if source == self.target:
            log.warning("Skipping %s: it is the target address", source)
            return []

        log.info("Checking direct connections for %s", source)
        history = self.fetcher.fetch(source)
        observations = find_direct_connections(source, history, self.target)
        if self.bidirectional:
            observations += find_direct_connections(source, self.target_history, self.target)

        unique = {}
        for obs in observations:
            unique.setdefault(obs.record.dedup_key, obs)

        ordered = sorted(unique.values(),
                         key=lambda o: (-o.record.block_number, o.record.kind.value, o.record.hash))
        connections = [DirectConnection(item.participant_code, obs) for obs in ordered]

        for conn in connections:
            log.info("Found %s %s transaction %s target: %s", conn.direction.value,
                     conn.observation.record.kind.value,
                     "to" if conn.direction is Direction.OUTGOING else "from",
                     conn.observation.record.hash)
        if connections:
            log.info("Found %d direct connections for %s", len(connections), source)
        else:
            log.info("No direct connections found for %s", source)
        return connections


def run_direct_connections(config: RunConfig, items: List[InputRecord],
                           client: Optional[EtherscanClient] = None,
                           bidirectional: bool = False,
                           output_path: Optional[Path] = None,
                           scheduler: Optional[BatchScheduler] = None):
    """
    Check every item against config.target_address.

    Returns (connections, summary). When output_path is given the CSV is
    rewritten after every batch, header only while nothing has been found.
    """
    if not config.target_address:
        raise ValueError("target_address is required for direct connection mode")

    scheduler = scheduler or BatchScheduler(config)
    client = client or EtherscanClient(config, sleep=scheduler.backoff_sleep)
    fetcher = TransactionHistoryFetcher(client, config, sleep=scheduler.backoff_sleep)
    finder = DirectConnectionFinder(fetcher, config.target_address, bidirectional)

    connections: List[DirectConnection] = []

    def process(item: InputRecord):
        connections.extend(finder.check(item))

    def flush(batch_number: int, total_batches: int):
        if output_path is not None:
            n = write_csv(output_path, DIRECT_CONNECTIONS_HEADER,
                          (c.to_row() for c in connections))
            log.info("Saved %d transactions to %s", n, output_path)

    summary = scheduler.run(items, process, on_batch_complete=flush)
    return connections, summary


def main():
    parser = argparse.ArgumentParser(
        description="Find direct transactions between addresses and a target",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python3 direct_connections.py addresses.csv --target 0x1234...
    python3 direct_connections.py --address 0xabcd... --target 0x1234...
    python3 direct_connections.py addresses.csv --target 0x1234... --bidirectional
        """
    )
    parser.add_argument("input", nargs="?", help="Input CSV with eth_address[, participant_code]")
    parser.add_argument("--address", action="append", help="Address to check (repeatable)")
    parser.add_argument("--target", help="Target address (default: TARGET_ADDRESS)")
    parser.add_argument("--bidirectional", action="store_true",
                        help="Also scan the target's own history")
    parser.add_argument("-o", "--output", help="Output CSV (default: <output-dir>/direct_connections.csv)")
    parser.add_argument("--output-dir", type=Path, help="Output directory (default: results)")
    parser.add_argument("--batch-size", type=int, help="Addresses per batch (default: 5)")
    parser.add_argument("--chain-id", type=int, help="Chain ID (default: 1)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        config = RunConfig.from_env(
            target_address=args.target,
            output_dir=args.output_dir,
            batch_size=args.batch_size,
            chain_id=args.chain_id,
        )
    except ValueError as e:
        log.error("%s", e)
        sys.exit(1)

    if not config.target_address:
        parser.error("--target (or TARGET_ADDRESS) is required")

    try:
        if args.address:
            items = records_from_args(args.address)
        elif args.input:
            items = load_addresses(args.input)
        else:
            parser.error("Input CSV or --address required")
    except InputSourceMissing as e:
        log.error("%s", e)
        sys.exit(1)

    if not config.api_key:
        log.error("ETHERSCAN_API_KEY not set")
        sys.exit(1)

    output_path = Path(args.output) if args.output else config.output_dir / "direct_connections.csv"
    add_log_file(config.output_dir / "scan.log")

    log.info("=== ETHEREUM DIRECT CONNECTION DETECTOR ===")
    log.info("Target address: %s", config.target_address)
    log.info("Beginning analysis of %d addresses", len(items))

    scheduler = BatchScheduler(config)
    setup_signal_handlers(scheduler)
    try:
        connections, summary = run_direct_connections(
            config, items, bidirectional=args.bidirectional,
            output_path=output_path, scheduler=scheduler,
        )
    except KeyboardInterrupt:
        log.warning("Interrupted. Results up to the last completed batch are in %s", output_path)
        sys.exit(130)

    incoming = sum(1 for c in connections if c.direction is Direction.INCOMING)
    outgoing = len(connections) - incoming

    print(f"\n{'='*60}")
    print("INVESTIGATION SUMMARY")
    print(f"{'='*60}")
    print(f"  Target address:             {config.target_address}")
    print(f"  Addresses analyzed:         {summary.processed}/{summary.total}")
    print(f"  Failed addresses:           {len(summary.failed)}")
    print(f"  Direct transactions found:  {len(connections)}")
    print(f"    Incoming (from target):   {incoming}")
    print(f"    Outgoing (to target):     {outgoing}")
    print(f"  Results saved to:           {output_path}")
    if connections:
        wallets = sorted({c.wallet for c in connections})
        print(f"\nConnected wallets ({len(wallets)}):")
        for wallet in wallets[:20]:
            count = sum(1 for c in connections if c.wallet == wallet)
            print(f"  {short(wallet)} - {count} transactions")
    else:
        print("  No direct connections found.")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Common Address Detector

Finds addresses that transacted directly with several addresses from an
input list. A counterparty shared by many inputs, such as a funding wallet or a
personal deposit address, is a strong hint that the inputs belong to the
same operator.

Signal:
- Counterparty touches >= MIN_COMMON_ADDRESSES inputs -> reported
- Known exchanges and popular contracts -> excluded (they touch everyone)

Usage:
    # Analyze addresses from CSV
    python3 scripts/common_address_detector.py addresses.csv

    # Require 3 shared inputs, keep exchange addresses
    python3 scripts/common_address_detector.py addresses.csv --min-common 3 --include-services

    # Extra exclusions and JSON report
    python3 scripts/common_address_detector.py addresses.csv --exclude 0x1234... --json report.json

Output (rewritten after every batch, final version sorted by count):
    results/common_connections.csv        one row per transaction
    results/common_addresses_summary.csv  one row per common counterparty
    results/scan.log                      log of every run (appended)

Environment:
    ETHERSCAN_API_KEY - Required for transaction history
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from addresses import canonicalize, label_for, short
from batch_scheduler import BatchRunSummary, BatchScheduler, setup_signal_handlers
from correlation_engine import CorrelationEngine, RunReport
from counterparties import extract_counterparties
from etherscan_client import EtherscanClient
from report_io import (InputRecord, InputSourceMissing, load_addresses, records_from_args,
                       report_to_dict, write_correlation_report, write_json)
from settings import RunConfig, add_log_file, setup_logging
from tx_history import TransactionHistoryFetcher

log = logging.getLogger(__name__)


def run_common_address_detection(config: RunConfig, items: List[InputRecord],
                                 client: Optional[EtherscanClient] = None,
                                 scheduler: Optional[BatchScheduler] = None,
                                 output_dir: Optional[Path] = None):
    """
    Correlate the counterparties of every input address.

    Returns (report, summary). When output_dir is given, partial results are
    written after each batch and the final report at the end.
    """
    scheduler = scheduler or BatchScheduler(config)
    client = client or EtherscanClient(config, sleep=scheduler.backoff_sleep)
    fetcher = TransactionHistoryFetcher(client, config, sleep=scheduler.backoff_sleep)
    engine = CorrelationEngine()
    exclusions = config.exclusion_set()

    def process(item: InputRecord):
        source = canonicalize(item.address)
        history = fetcher.fetch(source)
        counterparties = extract_counterparties(source, history)
        engine.accumulate(source, counterparties)
        log.info("Processed %s: %d counterparties", source, len(counterparties))

    def flush(batch_number: int, total_batches: int):
        if output_dir is None:
            return
        partial = engine.snapshot(config.min_common_addresses, exclusions)
        write_correlation_report(partial, output_dir)
        log.info("Saved partial results after batch %d/%d (%d common counterparties so far)",
                 batch_number, total_batches, len(partial))

    log.info("Minimum connections required: %d", config.min_common_addresses)
    summary = scheduler.run(items, process, on_batch_complete=flush)

    report = engine.finalize(config.min_common_addresses, exclusions)
    if output_dir is not None:
        paths = write_correlation_report(report, output_dir)
        log.info("Saved %d transaction rows to %s", report.transaction_count, paths["connections"])
        log.info("Saved summary to %s", paths["summary"])
    return report, summary


def print_summary(report: RunReport, summary: BatchRunSummary, config: RunConfig):
    print(f"\n{'='*60}")
    print("COMMON ADDRESS ANALYSIS SUMMARY")
    print(f"{'='*60}")
    print(f"  Input addresses analyzed:     {summary.processed}/{summary.total}")
    print(f"  Failed addresses:             {len(summary.failed)}")
    print(f"  Counterparties seen:          {report.total_counterparties}")
    print(f"  Common counterparties found:  {len(report)}")
    print(f"  Total transactions:           {report.transaction_count}")
    print(f"  Exchange/service filtering:   {'ON' if config.exclude_services else 'OFF'}"
          f" ({report.excluded_services} excluded)")
    if summary.cancelled:
        print("  Run was cancelled; results are partial")

    if len(report):
        print("\nTop common counterparties:")
        for entry in report.entries[:20]:
            label = label_for(entry.counterparty)
            suffix = f" [{label}]" if label else ""
            print(f"  {entry.counterparty}{suffix} - {entry.interaction_count} inputs, "
                  f"{len(entry.transactions)} txs")
            for source in entry.source_addresses[:5]:
                print(f"      {short(source)}")
        if len(report) > 20:
            print(f"  ... and {len(report) - 20} more")


def main():
    parser = argparse.ArgumentParser(
        description="Find counterparties shared by multiple input addresses",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python3 common_address_detector.py addresses.csv
    python3 common_address_detector.py addresses.csv --min-common 3
    python3 common_address_detector.py --address 0xaaa... --address 0xbbb...
        """
    )
    parser.add_argument("input", nargs="?", help="Input CSV with an eth_address column")
    parser.add_argument("--address", action="append", help="Address to analyze (repeatable)")
    parser.add_argument("--min-common", type=int,
                        help="Minimum input addresses a counterparty must touch (default: 2)")
    parser.add_argument("--include-services", action="store_true",
                        help="Do not exclude known exchange/service addresses")
    parser.add_argument("--exclude", action="append", default=[],
                        help="Extra address to exclude (repeatable)")
    parser.add_argument("--output-dir", type=Path, help="Output directory (default: results)")
    parser.add_argument("--json", help="Also write the full report as JSON to this path")
    parser.add_argument("--batch-size", type=int, help="Addresses per batch (default: 5)")
    parser.add_argument("--chain-id", type=int, help="Chain ID (default: 1)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        config = RunConfig.from_env(
            min_common_addresses=args.min_common,
            exclude_services=False if args.include_services else None,
            output_dir=args.output_dir,
            batch_size=args.batch_size,
            chain_id=args.chain_id,
        )
        if args.exclude:
            config = replace(config, extra_exclusions=config.extra_exclusions | frozenset(args.exclude))
    except ValueError as e:
        log.error("%s", e)
        sys.exit(1)

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

    add_log_file(config.output_dir / "scan.log")
    log.info("=== ETHEREUM COMMON ADDRESS DETECTOR ===")
    log.info("Looking for common counterparties across %d input addresses", len(items))

    scheduler = BatchScheduler(config)
    setup_signal_handlers(scheduler)
    try:
        report, summary = run_common_address_detection(
            config, items, scheduler=scheduler, output_dir=config.output_dir,
        )
    except KeyboardInterrupt:
        log.warning("Interrupted. Partial results up to the last completed batch are in %s",
                    config.output_dir)
        sys.exit(130)

    if args.json:
        write_json(args.json, report_to_dict(report, input_count=len(items)))
        log.info("Saved JSON report to %s", args.json)

    print_summary(report, summary, config)
    print(f"\n  Results saved to: {config.output_dir / 'common_connections.csv'}")
    print(f"  Summary saved to: {config.output_dir / 'common_addresses_summary.csv'}")


if __name__ == "__main__":
    main()

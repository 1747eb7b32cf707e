#!/usr/bin/env python3
"""
Input loading and output sinks for the address link tools.

Input CSVs need an address column (eth_address, ETH_ADDRESS, address or
wallet) and may carry a participant_code column. Output files are written to
a temporary file and renamed into place, so an interrupted run never leaves a
half-written CSV behind; the last completed batch is always readable.
"""

import csv
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

from addresses import canonicalize, is_valid_address, label_for
from counterparties import format_amount
from correlation_engine import RunReport

log = logging.getLogger(__name__)

ADDRESS_COLUMNS = ("eth_address", "ETH_ADDRESS", "address", "wallet")
CODE_COLUMNS = ("participant_code", "PARTICIPANT_CODE")

COMMON_CONNECTIONS_HEADER = [
    "WALLET", "COMMON_ADDRESS", "TX_HASH", "DIRECTION", "AMOUNT", "TIMESTAMP", "TYPE",
]
SUMMARY_HEADER = ["COMMON_ADDRESS", "SOURCE_ADDRESS_COUNT", "TRANSACTION_COUNT", "LABEL"]


class InputSourceMissing(Exception):
    """No usable address list; the run cannot start."""


@dataclass(frozen=True)
class InputRecord:
    address: str
    participant_code: str = ""


def _first(row: dict, columns: Sequence[str]) -> str:
    for col in columns:
        value = row.get(col)
        if value:
            return value.strip()
    return ""


def parse_rows(rows: Iterable[dict]) -> List[InputRecord]:
    """Turn CSV rows into InputRecords, skipping rows without a valid address."""
    records = []
    for i, row in enumerate(rows, start=1):
        raw = _first(row, ADDRESS_COLUMNS)
        if not raw:
            continue
        if not is_valid_address(raw):
            log.warning("Skipping invalid address at row %d: %s", i, raw)
            continue
        records.append(InputRecord(canonicalize(raw), _first(row, CODE_COLUMNS)))
    return records


def load_addresses(csv_path) -> List[InputRecord]:
    """Read the input CSV. Raises InputSourceMissing if nothing usable is found."""
    path = Path(csv_path)
    if not path.exists():
        raise InputSourceMissing(f"Input file {path} does not exist")

    # utf-8-sig strips the BOM that Excel puts in front of the header
    with open(path, "r", newline="", encoding="utf-8-sig") as f:
        records = parse_rows(csv.DictReader(f))

    if not records:
        raise InputSourceMissing(f"No addresses found in {path}")

    log.info("Loaded %d addresses from %s", len(records), path)
    return records


def records_from_args(addresses: Iterable[str]) -> List[InputRecord]:
    records = parse_rows({"address": a} for a in addresses)
    if not records:
        raise InputSourceMissing("No valid addresses given")
    return records


def _atomic_write(path: Path, write):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", newline="") as f:
            write(f)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_csv(path, header: Sequence[str], rows: Iterable[Sequence[Any]]) -> int:
    """Write header + rows atomically. Returns the number of data rows."""
    rows = list(rows)

    def _write(f):
        writer = csv.writer(f)
        writer.writerow(header)
        writer.writerows(rows)

    _atomic_write(Path(path), _write)
    return len(rows)


def write_json(path, data: Any):
    _atomic_write(Path(path), lambda f: json.dump(data, f, indent=2, default=str))


# ============================================================================
# Correlation report rows
# ============================================================================

def connection_rows(report: RunReport) -> List[list]:
    rows = []
    for entry in report:
        for obs in entry.transactions:
            rows.append([
                obs.source,
                entry.counterparty,
                obs.record.hash,
                obs.direction.value,
                format_amount(obs.record, obs.eth_value),
                obs.iso_timestamp,
                obs.record.kind.value,
            ])
    return rows


def summary_rows(report: RunReport) -> List[list]:
    return [
        [entry.counterparty, entry.interaction_count, len(entry.transactions),
         label_for(entry.counterparty) or ""]
        for entry in report
    ]


def report_to_dict(report: RunReport, input_count: Optional[int] = None) -> dict:
    return {
        "input_addresses": input_count,
        "min_interactions": report.min_interactions,
        "total_counterparties": report.total_counterparties,
        "excluded_services": report.excluded_services,
        "common_counterparties": [
            {
                "address": entry.counterparty,
                "interaction_count": entry.interaction_count,
                "source_addresses": list(entry.source_addresses),
                "transactions": [
                    {
                        "wallet": obs.source,
                        "hash": obs.record.hash,
                        "type": obs.record.kind.value,
                        "direction": obs.direction.value,
                        "value": str(obs.record.value),
                        "amount": format_amount(obs.record, obs.eth_value),
                        "block_number": obs.record.block_number,
                        "timestamp": obs.iso_timestamp,
                    }
                    for obs in entry.transactions
                ],
            }
            for entry in report
        ],
    }


def write_correlation_report(report: RunReport, output_dir) -> dict:
    """Write the connection and summary CSVs. Returns the paths written."""
    output_dir = Path(output_dir)
    connections_path = output_dir / "common_connections.csv"
    summary_path = output_dir / "common_addresses_summary.csv"

    n = write_csv(connections_path, COMMON_CONNECTIONS_HEADER, connection_rows(report))
    write_csv(summary_path, SUMMARY_HEADER, summary_rows(report))
    log.debug("Wrote %d transaction rows to %s", n, connections_path)
    return {"connections": connections_path, "summary": summary_path}

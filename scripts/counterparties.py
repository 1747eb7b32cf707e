#!/usr/bin/env python3
"""
Counterparty extraction.

For one source address, groups every normal, internal and token record by
the address on the other side, tagging each with direction, an ETH value and
an ISO-8601 timestamp.

ETH values are value / 10**18 as a float. Large wei amounts lose precision
in the last digits; the exact integer stays on the record.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from addresses import canonicalize
from tx_history import TransactionHistory, TransactionRecord, TxKind

WEI_PER_ETH = 10 ** 18


class Direction(Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


@dataclass(frozen=True)
class CounterpartyObservation:
    source: str
    counterparty: str
    record: TransactionRecord
    direction: Direction
    eth_value: float
    iso_timestamp: str


def wei_to_eth(value: int) -> float:
    return value / WEI_PER_ETH


def format_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_eth(eth_value: float) -> str:
    """1.0 -> '1', 0.25 -> '0.25', 5e-05 -> '0.00005' (never scientific notation)."""
    text = format(Decimal(repr(float(eth_value))), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_amount(record: TransactionRecord, eth_value: float) -> str:
    """Token transfers show the raw amount and symbol, everything else ETH."""
    if record.kind is TxKind.TOKEN and record.token_symbol:
        return f"{record.value} {record.token_symbol}"
    return f"{format_eth(eth_value)} ETH"


def observe(source: str, record: TransactionRecord) -> Optional[CounterpartyObservation]:
    """
    Build the observation for one record from the source's point of view.

    Returns None when the record does not involve the source or is a
    transfer to itself.
    """
    if record.from_address == source:
        counterparty = record.to_address
        direction = Direction.OUTGOING
    elif record.to_address == source:
        counterparty = record.from_address
        direction = Direction.INCOMING
    else:
        return None

    if not counterparty or counterparty == source:
        return None

    return CounterpartyObservation(
        source=source,
        counterparty=counterparty,
        record=record,
        direction=direction,
        eth_value=wei_to_eth(record.value),
        iso_timestamp=format_timestamp(record.timestamp),
    )


def extract_counterparties(source: str,
                           history: TransactionHistory) -> Dict[str, List[CounterpartyObservation]]:
    """Map counterparty -> observations, in history order (normal, internal, token)."""
    source = canonicalize(source)
    counterparties: Dict[str, List[CounterpartyObservation]] = {}

    for record in history:
        obs = observe(source, record)
        if obs is None:
            continue
        counterparties.setdefault(obs.counterparty, []).append(obs)

    return counterparties

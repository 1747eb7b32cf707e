#!/usr/bin/env python3
"""
Transaction history for a single address.

Pulls the three Etherscan account lists (normal, internal, ERC20 token
transfers) one after another through the rate-limited client and turns the
raw rows into TransactionRecord objects.

Limitation: only the first page of each list is requested (page_size rows,
newest first). Very active addresses are truncated; a warning is logged when
a page comes back full.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, List, Optional, Tuple

from addresses import canonicalize, short
from etherscan_client import EtherscanClient
from settings import RunConfig

log = logging.getLogger(__name__)

START_BLOCK = 0
END_BLOCK = 99999999


class TxKind(Enum):
    NORMAL = "normal"
    INTERNAL = "internal"
    TOKEN = "token"


# Etherscan action per kind, in fetch order
ACTIONS = (
    (TxKind.NORMAL, "txlist"),
    (TxKind.INTERNAL, "txlistinternal"),
    (TxKind.TOKEN, "tokentx"),
)


@dataclass(frozen=True)
class TransactionRecord:
    """One transaction or transfer event. Addresses are canonical."""
    hash: str
    from_address: str
    to_address: Optional[str]
    value: int
    block_number: int
    timestamp: int
    kind: TxKind
    token_name: Optional[str] = None
    token_symbol: Optional[str] = None

    @property
    def dedup_key(self) -> Tuple[str, str, str, str, int]:
        # Hashes repeat across kinds (a swap shows up as a normal tx and as
        # token transfers) and across transfer events inside one tx.
        return (self.kind.value, self.hash, self.from_address,
                self.to_address or "", self.value)


@dataclass
class TransactionHistory:
    address: str
    normal: List[TransactionRecord] = field(default_factory=list)
    internal: List[TransactionRecord] = field(default_factory=list)
    token: List[TransactionRecord] = field(default_factory=list)
    dropped: int = 0

    def records(self, kind: TxKind) -> List[TransactionRecord]:
        return getattr(self, kind.value)

    def __iter__(self) -> Iterator[TransactionRecord]:
        for kind, _ in ACTIONS:
            yield from self.records(kind)

    def __len__(self) -> int:
        return len(self.normal) + len(self.internal) + len(self.token)


def normalize_row(row: dict, kind: TxKind) -> Optional[TransactionRecord]:
    """
    Convert one Etherscan row. Returns None for rows missing from/to or with
    unparseable numeric fields.
    """
    if not isinstance(row, dict):
        return None
    from_addr = row.get("from")
    to_addr = row.get("to")
    if not from_addr or not to_addr:
        return None

    try:
        value = int(row.get("value") or 0)
        block_number = int(row.get("blockNumber") or 0)
        timestamp = int(row.get("timeStamp") or 0)
    except (TypeError, ValueError):
        return None

    token_name = token_symbol = None
    if kind is TxKind.TOKEN:
        token_name = row.get("tokenName") or None
        token_symbol = row.get("tokenSymbol") or None

    return TransactionRecord(
        hash=str(row.get("hash") or ""),
        from_address=canonicalize(from_addr),
        to_address=canonicalize(to_addr),
        value=value,
        block_number=block_number,
        timestamp=timestamp,
        kind=kind,
        token_name=token_name,
        token_symbol=token_symbol,
    )


class TransactionHistoryFetcher:
    """Fetches normal, internal and token histories for addresses."""

    def __init__(self, client: EtherscanClient, config: RunConfig,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.config = config
        self.sleep = sleep

    def _params(self, action: str, address: str) -> dict:
        return {
            "module": "account",
            "action": action,
            "address": address,
            "startblock": START_BLOCK,
            "endblock": END_BLOCK,
            "page": 1,
            "offset": self.config.page_size,
            "sort": "desc",
        }

    def fetch(self, address: str) -> TransactionHistory:
        address = canonicalize(address)
        history = TransactionHistory(address)
        log.info("Getting transactions for %s", address)

        for i, (kind, action) in enumerate(ACTIONS):
            if i:
                self.sleep(self.config.request_delay)

            result = self.client.request(self._params(action, address))
            if len(result.rows) >= self.config.page_size:
                log.warning("%s list for %s hit the page limit (%d rows); older "
                            "history is truncated", kind.value, short(address),
                            self.config.page_size)

            records = history.records(kind)
            for row in result.rows:
                record = normalize_row(row, kind)
                if record is None:
                    history.dropped += 1
                    continue
                records.append(record)

            log.info("- Found %d %s transactions", len(records), kind.value)

        if history.dropped:
            log.debug("Dropped %d malformed rows for %s", history.dropped, address)
        return history

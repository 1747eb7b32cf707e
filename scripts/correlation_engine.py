#!/usr/bin/env python3
"""
Common Counterparty Correlation

Aggregates counterparties across every address in the input list and keeps
the ones that interact with at least N distinct input addresses.

Key insight: a deposit address or funding wallet that shows up in
the history of several unrelated-looking inputs ties those inputs together.
Exchanges and popular contracts touch everyone, so known services are
excluded before ranking.

The accumulator is written by a single caller (the batch loop). Merging is
a set union on sources plus a keyed insert on transactions, so the final
report is the same whatever order the addresses were processed in.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Set, Tuple

from addresses import canonicalize
from counterparties import CounterpartyObservation

log = logging.getLogger(__name__)


def _observation_order(obs: CounterpartyObservation):
    record = obs.record
    return (-record.block_number, record.kind.value, record.hash,
            obs.source, record.from_address, record.to_address or "", record.value)


@dataclass
class _Accumulated:
    sources: Set[str] = field(default_factory=set)
    transactions: Dict[Tuple, CounterpartyObservation] = field(default_factory=dict)


@dataclass(frozen=True)
class ReportEntry:
    counterparty: str
    interaction_count: int
    source_addresses: Tuple[str, ...]
    transactions: Tuple[CounterpartyObservation, ...]


@dataclass(frozen=True)
class RunReport:
    entries: Tuple[ReportEntry, ...]
    min_interactions: int
    total_counterparties: int
    excluded_services: int

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def transaction_count(self) -> int:
        return sum(len(e.transactions) for e in self.entries)


class CorrelationEngine:
    """Accumulates counterparty observations for one run."""

    def __init__(self):
        self._counterparties: Dict[str, _Accumulated] = {}
        self._finalized = False

    def __len__(self) -> int:
        return len(self._counterparties)

    def sources_for(self, counterparty: str) -> FrozenSet[str]:
        entry = self._counterparties.get(canonicalize(counterparty))
        return frozenset(entry.sources) if entry else frozenset()

    def accumulate(self, source: str,
                   counterparty_map: Dict[str, List[CounterpartyObservation]]) -> int:
        """
        Merge one source's counterparties. Returns the number of new
        transactions stored.
        """
        if self._finalized:
            raise RuntimeError("CorrelationEngine already finalized")

        source = canonicalize(source)
        added = 0
        for counterparty, observations in counterparty_map.items():
            entry = self._counterparties.setdefault(canonicalize(counterparty), _Accumulated())
            entry.sources.add(source)

            for obs in observations:
                key = obs.record.dedup_key
                existing = entry.transactions.get(key)
                if existing is None:
                    entry.transactions[key] = obs
                    added += 1
                elif _observation_order(obs) < _observation_order(existing):
                    # same transaction seen from another angle; keep a fixed winner
                    entry.transactions[key] = obs
        return added

    def _build(self, min_interactions: int, exclusion_set: Iterable[str]) -> RunReport:
        if min_interactions < 1:
            raise ValueError(f"min_interactions must be >= 1, got {min_interactions}")
        excluded = frozenset(canonicalize(a) for a in exclusion_set)

        entries = []
        excluded_count = 0
        for counterparty, acc in self._counterparties.items():
            if counterparty in excluded:
                excluded_count += 1
                continue
            if len(acc.sources) < min_interactions:
                continue
            entries.append(ReportEntry(
                counterparty=counterparty,
                interaction_count=len(acc.sources),
                source_addresses=tuple(sorted(acc.sources)),
                transactions=tuple(sorted(acc.transactions.values(), key=_observation_order)),
            ))

        entries.sort(key=lambda e: (-e.interaction_count, e.counterparty))
        return RunReport(
            entries=tuple(entries),
            min_interactions=min_interactions,
            total_counterparties=len(self._counterparties),
            excluded_services=excluded_count,
        )

    def snapshot(self, min_interactions: int, exclusion_set: Iterable[str]) -> RunReport:
        """Current filtered view, for writing partial results between batches."""
        return self._build(min_interactions, exclusion_set)

    def finalize(self, min_interactions: int, exclusion_set: Iterable[str]) -> RunReport:
        report = self._build(min_interactions, exclusion_set)
        self._finalized = True
        log.info("Found %d total counterparties across all addresses",
                 report.total_counterparties)
        if report.excluded_services:
            log.info("Excluded %d known exchange/service addresses",
                     report.excluded_services)
        log.info("Found %d common counterparties that interact with at least %d addresses",
                 len(report), min_interactions)
        return report

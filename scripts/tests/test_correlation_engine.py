#!/usr/bin/env python3
"""
Tests for the correlation engine.

Run: python3 -m pytest scripts/tests/test_correlation_engine.py -v
"""

import itertools
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from correlation_engine import CorrelationEngine
from counterparties import extract_counterparties
from tx_history import TransactionHistory, TransactionRecord, TxKind

AAA = "0x" + "a" * 40
BBB = "0x" + "b" * 40
DDD = "0x" + "d" * 40
CCC = "0x" + "c" * 40
EEE = "0x" + "e" * 40


def rec(tx_hash, from_addr, to_addr, block=100, value=0, kind=TxKind.NORMAL):
    return TransactionRecord(tx_hash, from_addr, to_addr, value, block, 1700000000, kind)


def cmap(source, *records):
    return extract_counterparties(source, TransactionHistory(source, normal=list(records)))


def histories():
    return {
        AAA: cmap(AAA, rec("0xh1", AAA, CCC, block=10), rec("0xh4", AAA, EEE, block=11)),
        BBB: cmap(BBB, rec("0xh2", CCC, BBB, block=20)),
        DDD: cmap(DDD, rec("0xh5", DDD, EEE, block=30), rec("0xh6", CCC, DDD, block=5)),
    }


class TestThreshold:

    def test_two_sources_share_counterparty(self):
        engine = CorrelationEngine()
        engine.accumulate(AAA, cmap(AAA, rec("0xh1", AAA, CCC)))
        engine.accumulate(BBB, cmap(BBB, rec("0xh2", CCC, BBB)))

        report = engine.finalize(2, [])

        assert len(report) == 1
        entry = report.entries[0]
        assert entry.counterparty == CCC
        assert entry.interaction_count == 2
        assert entry.source_addresses == (AAA, BBB)
        assert {o.record.hash for o in entry.transactions} == {"0xh1", "0xh2"}

    def test_boundary(self):
        engine = CorrelationEngine()
        for source, counterparties in histories().items():
            engine.accumulate(source, counterparties)

        # CCC touches 3 inputs, EEE touches 2
        assert [e.counterparty for e in engine.snapshot(3, [])] == [CCC]
        assert [e.counterparty for e in engine.snapshot(2, [])] == [CCC, EEE]
        assert len(engine.snapshot(4, [])) == 0

    def test_threshold_one_keeps_everything(self):
        engine = CorrelationEngine()
        engine.accumulate(AAA, cmap(AAA, rec("0xh1", AAA, CCC)))
        assert [e.counterparty for e in engine.finalize(1, [])] == [CCC]

    def test_threshold_below_one_rejected(self):
        with pytest.raises(ValueError):
            CorrelationEngine().finalize(0, [])

    def test_same_source_twice_counts_once(self):
        engine = CorrelationEngine()
        engine.accumulate(AAA, cmap(AAA, rec("0xh1", AAA, CCC)))
        engine.accumulate(AAA, cmap(AAA, rec("0xh9", CCC, AAA)))
        assert len(engine.snapshot(2, [])) == 0
        assert engine.sources_for(CCC) == frozenset({AAA})


class TestExclusion:

    def test_excluded_counterparty_never_reported(self):
        engine = CorrelationEngine()
        for source, counterparties in histories().items():
            engine.accumulate(source, counterparties)

        report = engine.finalize(1, [CCC.upper().replace("0X", "0x")])

        assert CCC not in [e.counterparty for e in report]
        assert report.excluded_services == 1
        assert report.total_counterparties == 2


class TestDedup:

    def test_same_transaction_from_both_sides_stored_once(self):
        engine = CorrelationEngine()
        shared = rec("0xh1", AAA, BBB)
        engine.accumulate(AAA, cmap(AAA, shared, rec("0xh2", AAA, CCC)))
        engine.accumulate(BBB, cmap(BBB, shared, rec("0xh3", CCC, BBB)))
        engine.accumulate(DDD, cmap(DDD, rec("0xh4", DDD, AAA)))

        report = engine.finalize(1, [])
        by_addr = {e.counterparty: e for e in report}

        # 0xh1 is a transaction with BBB from AAA's view and with AAA from BBB's
        assert [o.record.hash for o in by_addr[BBB].transactions] == ["0xh1"]
        assert [o.record.hash for o in by_addr[AAA].transactions] == ["0xh1", "0xh4"]

    def test_repeated_accumulate_adds_nothing(self):
        engine = CorrelationEngine()
        counterparties = cmap(AAA, rec("0xh1", AAA, CCC))
        assert engine.accumulate(AAA, counterparties) == 1
        assert engine.accumulate(AAA, counterparties) == 0

    def test_same_hash_different_kind_kept(self):
        engine = CorrelationEngine()
        history = TransactionHistory(AAA, normal=[rec("0xh1", AAA, CCC)],
                                     token=[rec("0xh1", AAA, CCC, kind=TxKind.TOKEN)])
        engine.accumulate(AAA, extract_counterparties(AAA, history))
        assert len(engine.finalize(1, []).entries[0].transactions) == 2


class TestOrdering:

    def test_sorted_by_count_then_address(self):
        engine = CorrelationEngine()
        for source, counterparties in histories().items():
            engine.accumulate(source, counterparties)
        report = engine.finalize(1, [])
        assert [(e.counterparty, e.interaction_count) for e in report] == [(CCC, 3), (EEE, 2)]

    def test_ties_broken_by_address(self):
        engine = CorrelationEngine()
        engine.accumulate(AAA, cmap(AAA, rec("0xh1", AAA, EEE), rec("0xh2", AAA, CCC)))
        assert [e.counterparty for e in engine.finalize(1, [])] == [CCC, EEE]

    def test_transactions_newest_first(self):
        engine = CorrelationEngine()
        for source, counterparties in histories().items():
            engine.accumulate(source, counterparties)
        entry = engine.finalize(1, []).entries[0]
        assert [o.record.block_number for o in entry.transactions] == [20, 10, 5]

    def test_order_independent(self):
        data = histories()
        results = set()
        for order in itertools.permutations(data):
            engine = CorrelationEngine()
            for source in order:
                engine.accumulate(source, data[source])
            results.add(engine.finalize(1, []))
        assert len(results) == 1


class TestLifecycle:

    def test_accumulate_after_finalize_rejected(self):
        engine = CorrelationEngine()
        engine.finalize(2, [])
        with pytest.raises(RuntimeError):
            engine.accumulate(AAA, {})

    def test_snapshot_does_not_finalize(self):
        engine = CorrelationEngine()
        engine.snapshot(2, [])
        engine.accumulate(AAA, cmap(AAA, rec("0xh1", AAA, CCC)))
        assert len(engine) == 1

    def test_empty_run(self):
        report = CorrelationEngine().finalize(2, [])
        assert len(report) == 0
        assert report.transaction_count == 0
        assert report.total_counterparties == 0


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

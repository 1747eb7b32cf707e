#!/usr/bin/env python3
"""
End-to-end runs of common address detection against a fake Etherscan.

Run: python3 -m pytest scripts/tests/test_end_to_end.py -v
"""

import csv
import sys
from dataclasses import replace
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from batch_scheduler import BatchScheduler
from common_address_detector import run_common_address_detection
from conftest import RATE_LIMITED, make_response, tx_row
from etherscan_client import EtherscanClient
from report_io import InputRecord

AAA = "0x" + "a" * 40
BBB = "0x" + "b" * 40
CCC = "0x" + "c" * 40
ZZZ = "0x" + "f" * 40


def run(config, fake_etherscan, sleeps, addresses, output_dir=None):
    scheduler = BatchScheduler(config, sleep=sleeps.append)
    client = EtherscanClient(config, session=fake_etherscan, sleep=scheduler.backoff_sleep)
    items = [InputRecord(a) for a in addresses]
    return run_common_address_detection(config, items, client=client, scheduler=scheduler,
                                        output_dir=output_dir)


def read_csv(path):
    with open(path, newline="") as f:
        return list(csv.reader(f))


class TestCommonAddressDetection:

    def test_shared_counterparty_reported(self, config, fake_etherscan, sleeps):
        fake_etherscan.add("txlist", AAA, [tx_row("0xh1", AAA, CCC, value=10 ** 18)])
        fake_etherscan.add("txlist", BBB, [tx_row("0xh2", CCC, BBB, value=2 * 10 ** 18)])

        report, summary = run(config, fake_etherscan, sleeps, [AAA, BBB])

        assert len(report) == 1
        entry = report.entries[0]
        assert entry.counterparty == CCC
        assert entry.interaction_count == 2
        assert len(entry.transactions) == 2
        assert summary.processed == 2
        assert summary.failed == []

    def test_known_service_excluded(self, config, fake_etherscan, sleeps):
        binance = "0x28c6c06298d514db089934071355e5743bf21d60"
        config = replace(config, exclude_services=True)
        for source in (AAA, BBB):
            fake_etherscan.add("txlist", source, [tx_row("0x" + source[2], source, binance)])

        report, _ = run(config, fake_etherscan, sleeps, [AAA, BBB])

        assert len(report) == 0
        assert report.excluded_services == 1

    def test_counterparty_below_threshold_not_reported(self, config, fake_etherscan, sleeps):
        fake_etherscan.add("txlist", AAA, [tx_row("0xh1", AAA, CCC)])
        report, _ = run(config, fake_etherscan, sleeps, [AAA, BBB])
        assert len(report) == 0
        assert report.total_counterparties == 1

    def test_failing_address_isolated(self, config, fake_etherscan, sleeps):
        addresses = ["0x" + f"{i:040x}" for i in range(1, 11)]
        for address in addresses:
            fake_etherscan.add("txlist", address, [tx_row("0x" + address[-4:], address, CCC)])
        fake_etherscan.raise_for(addresses[2], RuntimeError("provider exploded"))

        report, summary = run(config, fake_etherscan, sleeps, addresses)

        assert summary.failed == [InputRecord(addresses[2])]
        assert summary.processed == 10
        assert report.entries[0].interaction_count == 9
        assert addresses[2] not in report.entries[0].source_addresses

    def test_rate_limit_recovers_within_run(self, config, fake_etherscan, sleeps):
        fake_etherscan.add("txlist", AAA, [tx_row("0xh1", AAA, CCC)])
        fake_etherscan.add("txlist", BBB, [tx_row("0xh2", BBB, CCC)])
        real_get = fake_etherscan.get
        limited = {"remaining": 2}

        def flaky_get(url, params=None, timeout=None):
            if params.get("address") == BBB and limited["remaining"]:
                limited["remaining"] -= 1
                return make_response(RATE_LIMITED)
            return real_get(url, params=params, timeout=timeout)

        fake_etherscan.get = flaky_get
        report, _ = run(config, fake_etherscan, sleeps, [AAA, BBB])

        assert report.entries[0].interaction_count == 2
        assert 5.0 in sleeps and 10.0 in sleeps

    def test_order_independent(self, config, fake_etherscan, sleeps):
        fake_etherscan.add("txlist", AAA, [tx_row("0xh1", AAA, CCC, block=1),
                                           tx_row("0xh3", AAA, ZZZ, block=3)])
        fake_etherscan.add("txlist", BBB, [tx_row("0xh2", CCC, BBB, block=2),
                                           tx_row("0xh4", ZZZ, BBB, block=4)])
        fake_etherscan.add("tokentx", BBB, [tx_row("0xh2", CCC, BBB, block=2)])

        first, _ = run(config, fake_etherscan, sleeps, [AAA, BBB])
        second, _ = run(config, fake_etherscan, sleeps, [BBB, AAA])

        assert first == second
        assert [e.counterparty for e in first] == [CCC, ZZZ]


class TestOutputFiles:

    def test_final_files(self, config, fake_etherscan, sleeps, tmp_path):
        fake_etherscan.add("txlist", AAA, [tx_row("0xh1", AAA, CCC, value=10 ** 18, block=7)])
        fake_etherscan.add("txlist", BBB, [tx_row("0xh2", CCC, BBB, value=10 ** 18, block=9)])
        out = tmp_path / "out"

        run(config, fake_etherscan, sleeps, [AAA, BBB], output_dir=out)

        rows = read_csv(out / "common_connections.csv")
        assert [r[:4] for r in rows[1:]] == [
            [BBB, CCC, "0xh2", "incoming"],
            [AAA, CCC, "0xh1", "outgoing"],
        ]
        assert read_csv(out / "common_addresses_summary.csv")[1] == [CCC, "2", "2", ""]

    def test_partial_results_written_per_batch(self, config, fake_etherscan, sleeps, tmp_path):
        config = replace(config, batch_size=2)
        out = tmp_path / "out"
        addresses = [AAA, BBB, "0x" + "1" * 40]
        fake_etherscan.add("txlist", AAA, [tx_row("0xh1", AAA, CCC)])
        fake_etherscan.add("txlist", BBB, [tx_row("0xh2", BBB, CCC)])
        snapshots = []

        def record_partial(seconds):
            if seconds == config.batch_delay:
                snapshots.append(read_csv(out / "common_addresses_summary.csv"))

        scheduler = BatchScheduler(config, sleep=record_partial)
        client = EtherscanClient(config, session=fake_etherscan, sleep=scheduler.backoff_sleep)
        run_common_address_detection(config, [InputRecord(a) for a in addresses],
                                     client=client, scheduler=scheduler, output_dir=out)

        # after batch 1 of 2 the summary already holds CCC
        assert snapshots == [[
            ["COMMON_ADDRESS", "SOURCE_ADDRESS_COUNT", "TRANSACTION_COUNT", "LABEL"],
            [CCC, "2", "2", ""],
        ]]

    def test_cancelled_run_keeps_completed_batches(self, config, fake_etherscan, sleeps,
                                                   tmp_path):
        config = replace(config, batch_size=2)
        out = tmp_path / "out"
        addresses = [AAA, BBB, "0x" + "1" * 40, "0x" + "2" * 40]
        fake_etherscan.add("txlist", AAA, [tx_row("0xh1", AAA, CCC)])
        fake_etherscan.add("txlist", BBB, [tx_row("0xh2", BBB, CCC)])
        scheduler = BatchScheduler(config, sleep=sleeps.append)
        client = EtherscanClient(config, session=fake_etherscan, sleep=scheduler.backoff_sleep)

        real_get = fake_etherscan.get

        def cancelling_get(url, params=None, timeout=None):
            if params.get("address") == BBB:
                scheduler.cancel()
            return real_get(url, params=params, timeout=timeout)

        fake_etherscan.get = cancelling_get
        report, summary = run_common_address_detection(
            config, [InputRecord(a) for a in addresses],
            client=client, scheduler=scheduler, output_dir=out,
        )

        assert summary.cancelled
        assert summary.processed == 2
        assert [e.counterparty for e in report] == [CCC]
        assert read_csv(out / "common_addresses_summary.csv")[1][0] == CCC


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

"""Shared fixtures: a fake Etherscan session and a zero-delay config."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from settings import RunConfig

NO_DATA = {"status": "0", "message": "No transactions found", "result": []}
RATE_LIMITED = {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}


def make_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error")
    else:
        response.raise_for_status.return_value = None
    return response


def tx_row(tx_hash, from_addr, to_addr, value=0, block=100, ts=1700000000, **extra):
    row = {
        "hash": tx_hash,
        "from": from_addr,
        "to": to_addr,
        "value": str(value),
        "blockNumber": str(block),
        "timeStamp": str(ts),
    }
    row.update(extra)
    return row


class FakeEtherscan:
    """Stands in for requests.Session; answers by (action, address)."""

    def __init__(self):
        self.payloads = {}
        self.errors = {}
        self.calls = []

    def add(self, action, address, rows):
        self.payloads[(action, address.lower())] = {"status": "1", "message": "OK", "result": rows}

    def raise_for(self, address, exc):
        self.errors[address.lower()] = exc

    def get(self, url, params=None, timeout=None):
        params = params or {}
        self.calls.append(dict(params))
        address = str(params.get("address", "")).lower()
        if address in self.errors:
            raise self.errors[address]
        payload = self.payloads.get((params.get("action"), address), NO_DATA)
        return make_response(payload)

    def actions_for(self, address):
        return [c["action"] for c in self.calls if c.get("address") == address.lower()]


@pytest.fixture
def fake_etherscan():
    return FakeEtherscan()


@pytest.fixture
def sleeps():
    """Records requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def config(tmp_path):
    return RunConfig(
        api_key="TESTKEY",
        batch_size=5,
        batch_delay=2.0,
        request_delay=0.5,
        max_retries=3,
        rate_limit_delay=5.0,
        transport_delay=2.0,
        exclude_services=False,
        output_dir=tmp_path / "results",
    )

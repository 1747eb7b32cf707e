#!/usr/bin/env python3
"""
Rate-limited Etherscan client.

Every request goes through EtherscanClient.request(), which injects the API
key and chain id, classifies the response and applies the retry policy:

    RATE_LIMITED     wait rate_limit_delay * (attempt + 1), retry
    transport error  wait transport_delay * (attempt + 1), retry
    NO_DATA          empty result, not an error
    ERROR            warning, empty result

After max_retries retries the client gives up and returns an empty result
so one bad query never aborts a run. The string matching that recognises
Etherscan's rate-limit and "no data" messages lives only in
classify_response().
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from settings import RunConfig

log = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = ("rate limit",)
NO_DATA_MARKERS = ("no transactions found", "no records found")


class ResponseStatus(Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    NO_DATA = "no_data"
    ERROR = "error"
    EXHAUSTED = "exhausted"


class RateLimited(Exception):
    """Provider asked us to slow down."""


class TransportFailure(Exception):
    """Network failure or unreadable response body."""


@dataclass
class ProviderResult:
    status: ResponseStatus
    rows: List[dict] = field(default_factory=list)
    attempts: int = 1
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (ResponseStatus.OK, ResponseStatus.NO_DATA)


def classify_response(payload: Any) -> ResponseStatus:
    """Map an Etherscan response body onto a ResponseStatus."""
    if not isinstance(payload, dict):
        return ResponseStatus.ERROR

    if str(payload.get("status")) == "1":
        return ResponseStatus.OK

    # Etherscan puts the detail in "result" for NOTOK responses and in
    # "message" for empty ones; check both.
    message = str(payload.get("message") or "").lower()
    result = payload.get("result")
    detail = result.lower() if isinstance(result, str) else ""
    text = f"{message} {detail}"

    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return ResponseStatus.RATE_LIMITED
    if any(marker in text for marker in NO_DATA_MARKERS):
        return ResponseStatus.NO_DATA
    return ResponseStatus.ERROR


def _describe(params: Dict[str, Any]) -> str:
    return f"{params.get('action', '?')} {params.get('address', '')}".strip()


class EtherscanClient:
    """Sequential, retrying access to the Etherscan account API."""

    def __init__(self, config: RunConfig,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.session = session or requests.Session()
        self.sleep = sleep
        self.request_count = 0

    def _attempt(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """One HTTP round trip. Raises RateLimited / TransportFailure."""
        query = dict(params)
        query["apikey"] = self.config.api_key
        query["chainid"] = self.config.chain_id

        self.request_count += 1
        try:
            response = self.session.get(
                self.config.api_url,
                params=query,
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise TransportFailure(str(e)) from e

        if classify_response(payload) is ResponseStatus.RATE_LIMITED:
            raise RateLimited(str(payload.get("result") or payload.get("message")))
        return payload

    def request(self, params: Dict[str, Any]) -> ProviderResult:
        """
        Run one provider query with retry and backoff.

        Always returns a ProviderResult; failures are downgraded to an empty
        row list with a non-OK status.
        """
        what = _describe(params)
        max_retries = self.config.max_retries

        for attempt in range(max_retries + 1):
            try:
                payload = self._attempt(params)
            except RateLimited as e:
                if attempt >= max_retries:
                    log.error("Rate limit persisted for %s after %d attempts: %s",
                              what, attempt + 1, e)
                    return ProviderResult(ResponseStatus.EXHAUSTED, attempts=attempt + 1,
                                          message=str(e))
                wait = self.config.rate_limit_delay * (attempt + 1)
                log.warning("Rate limit hit for %s (attempt %d/%d). Waiting %.1fs...",
                            what, attempt + 1, max_retries + 1, wait)
                self.sleep(wait)
                continue
            except TransportFailure as e:
                if attempt >= max_retries:
                    log.error("Request for %s failed after %d attempts: %s",
                              what, attempt + 1, e)
                    return ProviderResult(ResponseStatus.EXHAUSTED, attempts=attempt + 1,
                                          message=str(e))
                wait = self.config.transport_delay * (attempt + 1)
                log.warning("Request error for %s (attempt %d/%d): %s. Retrying in %.1fs",
                            what, attempt + 1, max_retries + 1, e, wait)
                self.sleep(wait)
                continue

            status = classify_response(payload)
            message = str(payload.get("message") or "")
            if status is ResponseStatus.OK:
                rows = payload.get("result")
                if not isinstance(rows, list):
                    log.warning("Unexpected result type for %s: %s", what, type(rows).__name__)
                    rows = []
                return ProviderResult(status, rows=rows, attempts=attempt + 1, message=message)
            if status is ResponseStatus.NO_DATA:
                log.debug("No data for %s", what)
                return ProviderResult(status, attempts=attempt + 1, message=message)

            detail = payload.get("result") if isinstance(payload.get("result"), str) else ""
            log.warning("API error for %s: %s %s", what, message or "Unknown error", detail)
            return ProviderResult(ResponseStatus.ERROR, attempts=attempt + 1,
                                  message=message or detail)

        raise AssertionError("unreachable")

#!/usr/bin/env python3
"""
Run configuration for the address link tools.

Values come from the environment (optionally a .env file in scripts/ or the
project root) and can be overridden by CLI flags. The resulting RunConfig is
frozen and handed to every component at construction.

Environment:
    ETHERSCAN_API_KEY     - Required for transaction history
    CHAIN_ID              - Etherscan V2 chain id (default: 1)
    BATCH_SIZE            - Addresses per batch (default: 5)
    BATCH_DELAY_MS        - Pause between batches (default: 2000)
    REQUEST_DELAY_MS      - Pause between requests (default: 500)
    MAX_RETRIES           - Retries per request (default: 3)
    MIN_COMMON_ADDRESSES  - Correlation threshold (default: 2)
    EXCLUDE_SERVICES      - Drop known exchanges/services (default: true)
    EXCLUDE_ADDRESSES     - Extra comma separated exclusions
    TARGET_ADDRESS        - Target for direct connection mode
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional

from dotenv import load_dotenv

from addresses import build_exclusion_set, canonicalize, is_valid_address

SCRIPT_DIR = Path(__file__).parent
PROJECT_DIR = SCRIPT_DIR.parent

ETHERSCAN_API_URL = "https://api.etherscan.io/v2/api"


def load_env() -> Optional[Path]:
    """Load the first .env found next to the scripts or in the project root."""
    env_paths = [SCRIPT_DIR / ".env", PROJECT_DIR / ".env"]
    for env_path in env_paths:
        if env_path.exists():
            load_dotenv(env_path)
            return env_path
    return None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_addresses(name: str) -> FrozenSet[str]:
    raw = os.getenv(name, "")
    return frozenset(canonicalize(a) for a in raw.split(",") if a.strip())


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one run. Delays are in seconds."""
    api_key: str = ""
    api_url: str = ETHERSCAN_API_URL
    chain_id: int = 1
    batch_size: int = 5
    batch_delay: float = 2.0
    request_delay: float = 0.5
    max_retries: int = 3
    rate_limit_delay: float = 5.0
    transport_delay: float = 2.0
    request_timeout: float = 10.0
    page_size: int = 10000
    min_common_addresses: int = 2
    exclude_services: bool = True
    extra_exclusions: FrozenSet[str] = field(default_factory=frozenset)
    target_address: Optional[str] = None
    output_dir: Path = Path("results")

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.min_common_addresses < 1:
            raise ValueError(
                f"min_common_addresses must be >= 1, got {self.min_common_addresses}"
            )
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")
        for name in ("batch_delay", "request_delay", "rate_limit_delay",
                     "transport_delay", "request_timeout"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

        if self.target_address is not None:
            target = canonicalize(self.target_address)
            if not is_valid_address(target):
                raise ValueError(f"Invalid target address: {self.target_address}")
            object.__setattr__(self, "target_address", target)

        object.__setattr__(
            self, "extra_exclusions",
            frozenset(canonicalize(a) for a in self.extra_exclusions)
        )
        object.__setattr__(self, "output_dir", Path(self.output_dir))

    @classmethod
    def from_env(cls, **overrides) -> "RunConfig":
        """
        Build a config from environment variables.

        Keyword overrides win over the environment; None values are ignored
        so argparse defaults can be passed straight through.
        """
        load_env()
        values = dict(
            api_key=os.getenv("ETHERSCAN_API_KEY", ""),
            chain_id=_env_int("CHAIN_ID", 1),
            batch_size=_env_int("BATCH_SIZE", 5),
            batch_delay=_env_int("BATCH_DELAY_MS", 2000) / 1000,
            request_delay=_env_int("REQUEST_DELAY_MS", 500) / 1000,
            max_retries=_env_int("MAX_RETRIES", 3),
            rate_limit_delay=_env_int("RATE_LIMIT_DELAY_MS", 5000) / 1000,
            transport_delay=_env_int("TRANSPORT_DELAY_MS", 2000) / 1000,
            request_timeout=float(_env_int("REQUEST_TIMEOUT", 10)),
            page_size=_env_int("PAGE_SIZE", 10000),
            min_common_addresses=_env_int("MIN_COMMON_ADDRESSES", 2),
            exclude_services=_env_bool("EXCLUDE_SERVICES", True),
            extra_exclusions=_env_addresses("EXCLUDE_ADDRESSES"),
            target_address=os.getenv("TARGET_ADDRESS") or None,
            output_dir=Path(os.getenv("OUTPUT_DIR", "results")),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def exclusion_set(self) -> FrozenSet[str]:
        return build_exclusion_set(self.exclude_services, self.extra_exclusions)


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def add_log_file(path) -> logging.FileHandler:
    """
    Mirror all log records into a persistent file, e.g. results/scan.log.

    The file is appended to, so it keeps a history of earlier runs.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
    logging.getLogger().addHandler(handler)
    return handler

"""Process-wide marketplace configuration.

Set once when the service is built and immutable afterwards. Values can
come from the environment (optionally a .env file):

    GIGLEDGER_PLATFORM_ACCOUNT      payout destination for platform fees
    GIGLEDGER_PLATFORM_FEE_PERCENT  integer percent taken at release (default 2)
    GIGLEDGER_EVENT_LOG             path of the JSONL event log mirror
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from gigledger.ledger.fees import DEFAULT_FEE_PERCENT

DEFAULT_PLATFORM_ACCOUNT = "platform"


@dataclass(frozen=True)
class MarketplaceConfig:
    """Fee rate, payout destination and event log location."""
    platform_fee_percent: int = DEFAULT_FEE_PERCENT
    platform_account: str = DEFAULT_PLATFORM_ACCOUNT
    event_log_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if isinstance(self.platform_fee_percent, bool) or not isinstance(self.platform_fee_percent, int):
            raise ValueError(
                f"platform_fee_percent must be an integer, got {self.platform_fee_percent!r}"
            )
        if not 0 <= self.platform_fee_percent <= 100:
            raise ValueError(
                f"platform_fee_percent must be within [0, 100], got {self.platform_fee_percent}"
            )
        if not self.platform_account or not self.platform_account.strip():
            raise ValueError("platform_account must be non-empty")

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> MarketplaceConfig:
        """Build a config from environment variables.

        If ``env_file`` is given it is loaded first; variables already
        set in the process environment win.
        """
        if env_file is not None:
            load_dotenv(env_file)

        fee_raw = os.getenv("GIGLEDGER_PLATFORM_FEE_PERCENT")
        try:
            fee_percent = int(fee_raw) if fee_raw else DEFAULT_FEE_PERCENT
        except ValueError:
            raise ValueError(
                f"GIGLEDGER_PLATFORM_FEE_PERCENT must be an integer, got {fee_raw!r}"
            ) from None

        log_raw = os.getenv("GIGLEDGER_EVENT_LOG")
        return cls(
            platform_fee_percent=fee_percent,
            platform_account=os.getenv("GIGLEDGER_PLATFORM_ACCOUNT") or DEFAULT_PLATFORM_ACCOUNT,
            event_log_path=Path(log_raw) if log_raw else None,
        )

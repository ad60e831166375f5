"""
Runtime configuration
=====================
Everything is read from the environment once at startup (a ``.env`` file in
the working directory is loaded first, if present) and handed to the
orchestrator and the Flask app as a frozen ``PosConfig``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

STRIPE_API_URL = "https://api.stripe.com/v1"
DEFAULT_DESCRIPTION = "In-person payment"


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class PosConfig:
    stripe_secret_key: str = ""
    reader_id: str = ""
    api_url: str = STRIPE_API_URL
    api_timeout: float = 15.0
    host: str = "0.0.0.0"
    port: int = 3000
    poll_interval: float = 1.5     # seconds between PaymentIntent fetches
    poll_attempts: int = 80        # 80 x 1.5s = 2 minute ceiling
    default_description: str = DEFAULT_DESCRIPTION
    db_path: str = ""              # empty = no local ledger
    simulate_tap: bool = False     # test-mode readers only
    log_level: str = "INFO"

    @property
    def live_mode(self) -> bool:
        return self.stripe_secret_key.startswith(("sk_live_", "rk_live_"))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "PosConfig":
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        def get(name: str, default: str = "") -> str:
            return (environ.get(name) or default).strip()

        return cls(
            stripe_secret_key=get("STRIPE_SECRET_KEY"),
            # READER_ID is the older name, still honoured
            reader_id=get("STRIPE_READER_ID") or get("READER_ID"),
            api_url=get("STRIPE_API_URL", STRIPE_API_URL).rstrip("/"),
            api_timeout=float(get("STRIPE_API_TIMEOUT", "15")),
            host=get("HOST", "0.0.0.0"),
            port=int(get("PORT", "3000")),
            poll_interval=float(get("POS_POLL_INTERVAL", "1.5")),
            poll_attempts=int(get("POS_POLL_ATTEMPTS", "80")),
            default_description=get("POS_DEFAULT_DESCRIPTION", DEFAULT_DESCRIPTION),
            db_path=get("POS_DB_PATH"),
            simulate_tap=_flag(environ.get("STRIPE_SIMULATE_TAP")),
            log_level=get("LOG_LEVEL", "INFO").upper(),
        )

"""Escrow configuration — file defaults with environment overrides.

Defaults live in config/escrow_params.json. Deployments override them
with environment variables, optionally from a .env file:

    JOBESCROW_MARK_CANCELED   "true" to move canceled jobs to CANCELED
    JOBESCROW_EVENT_LOG       path of the JSONL audit log
    JOBESCROW_LOG_LEVEL       logging level name
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from jobescrow.models.digest import DIGEST_SIZE

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
PARAMS_FILE = "escrow_params.json"

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EscrowConfig:
    """Runtime configuration for the escrow service.

    mark_canceled selects the corrected cancel behavior (CREATED and
    DEPOSITED jobs move to CANCELED). The default keeps the state as it
    was and only records the refund and reason.
    """

    mark_canceled: bool = False
    digest_size: int = DIGEST_SIZE
    event_log_path: Optional[Path] = None
    log_level: str = "INFO"

    @classmethod
    def from_config_dir(cls, config_dir: Path = DEFAULT_CONFIG_DIR) -> EscrowConfig:
        """Load from escrow_params.json; a missing file yields defaults."""
        config_path = Path(config_dir) / PARAMS_FILE
        if not config_path.exists():
            return cls()
        params = json.loads(config_path.read_text(encoding="utf-8"))
        escrow = params.get("escrow", {})
        audit = params.get("audit", {})
        log_path = audit.get("EVENT_LOG_PATH")
        return cls(
            mark_canceled=bool(escrow.get("MARK_CANCELED_ON_CANCEL", False)),
            digest_size=int(escrow.get("SUBMISSION_DIGEST_BYTES", DIGEST_SIZE)),
            event_log_path=Path(log_path) if log_path else None,
            log_level=str(params.get("logging", {}).get("LEVEL", "INFO")).upper(),
        )

    @classmethod
    def from_env(
        cls,
        config_dir: Path = DEFAULT_CONFIG_DIR,
        dotenv_path: Optional[Path] = None,
    ) -> EscrowConfig:
        """File defaults, then .env, then process environment."""
        load_dotenv(dotenv_path)
        config = cls.from_config_dir(config_dir)

        mark = os.getenv("JOBESCROW_MARK_CANCELED")
        if mark is not None:
            config = replace(config, mark_canceled=mark.strip().lower() in _TRUE)
        log_path = os.getenv("JOBESCROW_EVENT_LOG")
        if log_path:
            config = replace(config, event_log_path=Path(log_path))
        level = os.getenv("JOBESCROW_LOG_LEVEL")
        if level:
            config = replace(config, log_level=level.strip().upper())
        return config

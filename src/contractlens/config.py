"""Runtime configuration for ContractLens.

Settings are read from ``CONTRACTLENS_*`` environment variables after a
``.env`` file (if any) has been loaded.
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from dotenv import load_dotenv

# Load environment variables once at module level
load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = 'CONTRACTLENS_'


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


@dataclass(frozen=True)
class Settings:
    """Analysis settings shared by every run in a process."""

    # Source normalizer
    max_contract_size_kb: int = 512
    default_version_hint: str = '0.8.0'

    # Structural channel: message passing rounds
    message_passing_rounds: int = 8
    # Semantic channel: number of linearized items on each side of a node
    context_window: int = 6
    # Optional pretrained backbone for the semantic channel, e.g. microsoft/codebert-base
    semantic_backbone: Optional[str] = None

    # Decision policy
    divergence_bound: float = 0.5
    divergence_penalty: float = 0.3

    # Explainability
    counterfactual_max_edits: int = 3
    attribution_top_k: int = 5

    # Model / threshold store
    model_dir: Optional[str] = None
    thresholds_file: Optional[str] = None

    # Runs
    run_timeout_seconds: float = 120.0
    max_parallel_runs: int = 4
    retain_embeddings: bool = False

    log_level: str = 'INFO'
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> 'Settings':
        """Build settings from the environment, then apply explicit overrides."""
        values = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or not raw.strip():
                continue
            default = f.default
            try:
                values[f.name] = _coerce(raw, default) if default is not None else raw.strip()
            except ValueError:
                logger.warning(f"Ignoring invalid value {raw!r} for {ENV_PREFIX + f.name.upper()}")
        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **overrides) -> 'Settings':
        return replace(self, **overrides)


settings = Settings.from_env()

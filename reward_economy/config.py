"""Configuration system for reward-economy.

Every tunable of the economy (rewards, clocks, prize table, commission
rates, withdrawal rails) lives here as a pydantic model with the production
default, so a config file only needs to name what it overrides.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


# ═══════════════════════════════════════════════════════════════
#  Storage & Server
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "economy.db"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    trust_forwarded_for: bool = True


class MetricsConfig(BaseModel):
    enabled: bool = True
    metrics_path: str = "/metrics"
    health_path: str = "/health"


# ═══════════════════════════════════════════════════════════════
#  Tasks & Spin
# ═══════════════════════════════════════════════════════════════

class TasksConfig(BaseModel):
    rewards: dict[str, int] = Field(
        default={"task_1": 20, "task_2": 20, "task_3": 50},
        description="Fixed reward per slot; task_4 is resolved by the spin table",
    )
    cooldown_seconds: int = 180
    cycle_hours: int = 24
    invite_challenge_target: int = 15
    max_commit_retries: int = 3


class SpinPrizeConfig(BaseModel):
    prize: int
    label: str
    weight: int


class SpinConfig(BaseModel):
    total_weight: int = 100
    prizes: list[SpinPrizeConfig] = Field(default_factory=lambda: [
        SpinPrizeConfig(prize=15, label="15 PKR", weight=40),
        SpinPrizeConfig(prize=0, label="Try Again", weight=35),
        SpinPrizeConfig(prize=25, label="25 PKR", weight=12),
        SpinPrizeConfig(prize=50, label="50 PKR", weight=8),
        SpinPrizeConfig(prize=100, label="100 PKR", weight=4),
        SpinPrizeConfig(prize=199, label="199 PKR", weight=1),
    ])

    @model_validator(mode="after")
    def _weights_sum(self) -> "SpinConfig":
        if not self.prizes:
            raise ValueError("spin.prizes must not be empty")
        if any(p.weight < 0 for p in self.prizes):
            raise ValueError("spin.prizes weights must be non-negative")
        total = sum(p.weight for p in self.prizes)
        if total != self.total_weight:
            raise ValueError(
                f"spin.prizes weights sum to {total}, expected {self.total_weight}"
            )
        return self


# ═══════════════════════════════════════════════════════════════
#  Referrals & Commissions
# ═══════════════════════════════════════════════════════════════

class ReferralsConfig(BaseModel):
    commission_rates: dict[str, float] = Field(
        default={"L1": 0.10, "L2": 0.05, "L3": 0.02},
        description="Cascade levels in payout order → fraction of the reward",
    )
    signup_bonus: int = 3
    max_chain_depth: int = 6
    code_prefix: str = "KC"
    code_length: int = 6


class CommissionQueueConfig(BaseModel):
    poll_interval_seconds: float = 1.0
    batch_size: int = 50
    max_attempts: int = 5
    backoff_seconds: int = 30


# ═══════════════════════════════════════════════════════════════
#  Withdrawals
# ═══════════════════════════════════════════════════════════════

class WithdrawalsConfig(BaseModel):
    methods: list[str] = Field(default=["easypaisa", "jazzcash", "usdt"])
    minimum_amount: int = 500
    fee_rates: dict[str, float] = Field(
        default={"usdt": 0.02},
        description="Method → fee fraction; unlisted methods are free",
    )
    min_account_number_length: int = 5
    history_limit: int = 20


# ═══════════════════════════════════════════════════════════════
#  Security & Collaborators
# ═══════════════════════════════════════════════════════════════

class SecurityConfig(BaseModel):
    violation_reasons: dict[str, str] = Field(default={
        "root": "root_detected",
        "emulator": "emulator_detected",
        "vpn": "vpn_detected",
        "clone": "clone_detected",
        "parallel_space": "parallel_space_detected",
        "hooking": "hooking_detected",
    })
    skip_private_ip_lookup: bool = True


class CollaboratorConfig(BaseModel):
    base_url: str = "http://localhost:9000"
    api_token: str = ""
    timeout_seconds: float = 5.0


class RateLimitsConfig(BaseModel):
    """Per-client requests per window, keyed by route group."""
    enabled: bool = True
    window_seconds: int = 900
    general: int = 100
    auth: int = 10
    tasks: int = 20
    security: int = 30


class RootAccountConfig(BaseModel):
    """Inviter-less account seeded at startup so the first users have a code to join with."""
    uid: str
    referral_code: str
    phone: str = ""


# ═══════════════════════════════════════════════════════════════
#  Top-Level Economy Config
# ═══════════════════════════════════════════════════════════════

class EconomyConfig(BaseModel):
    """Full economy config."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    tasks: TasksConfig = Field(default_factory=TasksConfig)
    spin: SpinConfig = Field(default_factory=SpinConfig)

    referrals: ReferralsConfig = Field(default_factory=ReferralsConfig)
    commissions: CommissionQueueConfig = Field(default_factory=CommissionQueueConfig)

    withdrawals: WithdrawalsConfig = Field(default_factory=WithdrawalsConfig)

    security: SecurityConfig = Field(default_factory=SecurityConfig)
    identity: CollaboratorConfig = Field(default_factory=CollaboratorConfig)
    integrity: CollaboratorConfig = Field(default_factory=CollaboratorConfig)
    ip_reputation: CollaboratorConfig = Field(default_factory=CollaboratorConfig)

    rate_limits: RateLimitsConfig = Field(default_factory=RateLimitsConfig)

    admins: dict[str, str] = Field(
        default_factory=dict,
        description="uid → role (super_admin | moderator), seeded at startup",
    )
    root_accounts: list[RootAccountConfig] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> EconomyConfig:
    """Load and validate YAML config file into EconomyConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return EconomyConfig(**raw)

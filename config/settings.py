"""
Configuration loader for the application orchestrator.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./applypace.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    echo: bool = False


@dataclass
class RateLimitConfig:
    capacity: int = 20                  # burst size per user
    refill_per_hour: float = 8.0        # 192/day, leaves headroom under the board's ~200/day
    idle_ttl_hours: int = 24            # buckets untouched this long are pruned

    @property
    def refill_rate(self) -> float:
        """Tokens per second."""
        return self.refill_per_hour / 3600.0


@dataclass
class SchedulingConfig:
    timezone: str = "Europe/Moscow"
    business_hour_start: int = 9
    business_hour_end: int = 17
    min_gap_minutes: int = 30
    max_gap_minutes: int = 60


@dataclass
class OrchestratorConfig:
    tick_interval_s: int = 300          # how often schedules are evaluated
    default_interval_s: int = 1800      # per-user fetch interval
    max_jobs_per_fetch: int = 100
    call_timeout_s: float = 30.0        # bound on each fetch / broadcast call
    backoff_base_s: int = 300           # first retry lands on the next tick
    backoff_max_s: int = 1800
    source_tag: str = "hh.ru"


@dataclass
class BroadcasterConfig:
    backend: str = "memory"             # "memory" | "http"
    api_base_url: str = "http://localhost:3000"
    secret: str = ""
    timeout_s: float = 30.0


@dataclass
class Settings:
    app_name: str = "ApplyPace"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    broadcaster: BroadcasterConfig = field(default_factory=BroadcasterConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "APPLYPACE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                echo=db.get("echo", settings.debug),
            )

        if "rate_limit" in raw:
            rl = raw["rate_limit"]
            settings.rate_limit = RateLimitConfig(
                capacity=int(rl.get("capacity", 20)),
                refill_per_hour=float(rl.get("refill_per_hour", 8.0)),
                idle_ttl_hours=int(rl.get("idle_ttl_hours", 24)),
            )

        if "scheduling" in raw:
            sc = raw["scheduling"]
            settings.scheduling = SchedulingConfig(
                timezone=sc.get("timezone", "Europe/Moscow"),
                business_hour_start=int(sc.get("business_hour_start", 9)),
                business_hour_end=int(sc.get("business_hour_end", 17)),
                min_gap_minutes=int(sc.get("min_gap_minutes", 30)),
                max_gap_minutes=int(sc.get("max_gap_minutes", 60)),
            )

        if "orchestrator" in raw:
            oc = raw["orchestrator"]
            settings.orchestrator = OrchestratorConfig(
                tick_interval_s=int(oc.get("tick_interval_s", 300)),
                default_interval_s=int(oc.get("default_interval_s", 1800)),
                max_jobs_per_fetch=int(oc.get("max_jobs_per_fetch", 100)),
                call_timeout_s=float(oc.get("call_timeout_s", 30.0)),
                backoff_base_s=int(oc.get("backoff_base_s", 300)),
                backoff_max_s=int(oc.get("backoff_max_s", 1800)),
                source_tag=oc.get("source_tag", "hh.ru"),
            )

        if "broadcaster" in raw:
            bc = raw["broadcaster"]
            settings.broadcaster = BroadcasterConfig(
                backend=bc.get("backend", "memory"),
                api_base_url=bc.get("api_base_url", "http://localhost:3000"),
                secret=bc.get("secret", ""),
                timeout_s=float(bc.get("timeout_s", 30.0)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings

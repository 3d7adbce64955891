import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import toml
from dotenv import load_dotenv

from warprelease.src.models.team import Team
from warprelease.src.models.upload import UploadCredentials

ENV_PREFIX = "WARPRELEASE_"


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    env_path = os.environ.get("WARPRELEASE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".warprelease" / "config.toml"


def load_config() -> Dict[str, Any]:
    """Load configuration from TOML file."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    try:
        return toml.load(config_path)
    except Exception as e:
        raise ValueError(f"Failed to load config: {e}")


def _setting(config: Dict[str, Any], key: str, default=None):
    # Environment first, then the [release] table
    env_value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
    if env_value is not None and env_value != "":
        return env_value
    return config.get("release", {}).get(key, default)


def _as_float(key: str, value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {key}: {value!r}")


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ReleaseSettings:
    team_root: Path = field(default_factory=lambda: Path.home() / ".warprelease" / "teams")
    upload_strategies: Tuple[str, ...] = ("altool", "transporter")
    upload_budget: float = 1800.0
    processing_poll_interval: float = 30.0
    processing_budget: float = 1800.0
    enhanced_wait_budget: float = 600.0
    strict_registry: bool = False
    upload_attempt_timeout: Optional[float] = None
    lock_timeout: Optional[float] = None

    def __post_init__(self):
        if not self.upload_strategies:
            raise ValueError("At least one upload strategy is required")
        for key in (
            "upload_budget",
            "processing_poll_interval",
            "processing_budget",
            "enhanced_wait_budget",
        ):
            if getattr(self, key) <= 0:
                raise ValueError(f"{key} must be positive")
        if self.upload_attempt_timeout is not None and self.upload_attempt_timeout <= 0:
            raise ValueError("upload_attempt_timeout must be positive")


def load_settings(load_env: bool = True) -> ReleaseSettings:
    """Settings from config.toml's [release] table, overridden by WARPRELEASE_* variables"""
    if load_env:
        load_dotenv()
    config = load_config()
    defaults = ReleaseSettings()

    strategies = _setting(config, "upload_strategies", list(defaults.upload_strategies))
    if isinstance(strategies, str):
        strategies = [s.strip() for s in strategies.split(",") if s.strip()]

    lock_timeout = _setting(config, "lock_timeout")
    attempt_timeout = _setting(config, "upload_attempt_timeout")
    return ReleaseSettings(
        team_root=Path(_setting(config, "team_root", defaults.team_root)).expanduser(),
        upload_strategies=tuple(strategies),
        upload_budget=_as_float(
            "upload_budget", _setting(config, "upload_budget", defaults.upload_budget)
        ),
        processing_poll_interval=_as_float(
            "processing_poll_interval",
            _setting(config, "processing_poll_interval", defaults.processing_poll_interval),
        ),
        processing_budget=_as_float(
            "processing_budget",
            _setting(config, "processing_budget", defaults.processing_budget),
        ),
        enhanced_wait_budget=_as_float(
            "enhanced_wait_budget",
            _setting(config, "enhanced_wait_budget", defaults.enhanced_wait_budget),
        ),
        strict_registry=_as_bool(_setting(config, "strict_registry", False)),
        upload_attempt_timeout=(
            None
            if attempt_timeout is None
            else _as_float("upload_attempt_timeout", attempt_timeout)
        ),
        lock_timeout=None if lock_timeout is None else _as_float("lock_timeout", lock_timeout),
    )


def load_teams() -> List[Team]:
    """Teams declared as [teams.<name>] tables."""
    config = load_config()
    teams = []
    for name, data in config.get("teams", {}).items():
        data = dict(data)
        data.setdefault("team_id", name)
        teams.append(Team.from_config(data))
    return teams


def get_team(team_id: str) -> Team:
    for team in load_teams():
        if team.team_id == team_id:
            return team
    raise ValueError(
        f"Team {team_id} not found in config. Please add a [teams.{team_id}] section "
        f"to {get_config_path()}"
    )


def get_upload_credentials() -> UploadCredentials:
    """App Store Connect credentials from the environment or the [app_store_connect] table."""
    load_dotenv()
    asc_config = load_config().get("app_store_connect", {})

    def value(key: str) -> Optional[str]:
        return os.environ.get(f"{ENV_PREFIX}ASC_{key.upper()}") or asc_config.get(key)

    credentials = UploadCredentials(
        api_key_id=value("api_key_id"),
        api_issuer_id=value("api_issuer_id"),
        api_key_path=value("api_key_path"),
        apple_id=value("apple_id"),
        app_specific_password=value("app_specific_password"),
    )
    if not credentials.is_complete:
        raise ValueError(
            "App Store Connect credentials not found. Set api_key_id and api_issuer_id "
            "(or apple_id and app_specific_password) in the [app_store_connect] section "
            f"of {get_config_path()}"
        )
    return credentials

"""Configuration loader for the droplet controller and bot."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import yaml

from .errors import ConfigError


@dataclass(frozen=True)
class DigitalOceanConfig:
    token: str
    name: str
    region: str
    size: str
    image: str
    ssh_keys: Tuple[str, ...] = ()
    volumes: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SSHConfig:
    username: str
    private_key_path: str
    port: int
    timeout_sec: int


@dataclass(frozen=True)
class LifecycleConfig:
    poll_interval_sec: float
    poll_timeout_sec: float
    history_size: int

    @property
    def poll_timeout(self) -> Optional[float]:
        """Poll bound in seconds, or None when polling is unbounded."""
        return self.poll_timeout_sec if self.poll_timeout_sec > 0 else None


@dataclass(frozen=True)
class BotConfig:
    token: str
    chat_id: Optional[int]


@dataclass(frozen=True)
class DropletConfig:
    digitalocean: DigitalOceanConfig
    ssh: SSHConfig
    lifecycle: LifecycleConfig
    bot: BotConfig = field(default_factory=lambda: BotConfig(token="", chat_id=None))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DropletConfig":
        """Build and validate a config; missing keys take the defaults.

        Raises:
            ConfigError: a value has the wrong type or is out of range.
        """
        try:
            config = cls._build(data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config value: {e}") from e
        config.validate()
        return config

    @classmethod
    def _build(cls, data: Dict[str, Any]) -> "DropletConfig":
        do_data = data.get("digitalocean", {}) or {}
        ssh_data = data.get("ssh", {}) or {}
        lc_data = data.get("lifecycle", {}) or {}
        bot_data = data.get("bot", {}) or {}
        chat_id = bot_data.get("chat_id")
        return cls(
            digitalocean=DigitalOceanConfig(
                token=str(do_data.get("token", "") or ""),
                name=do_data.get("name", "mcdroplet"),
                region=do_data.get("region", "fra1"),
                size=do_data.get("size", "s-2vcpu-4gb"),
                image=do_data.get("image", "ubuntu-22-04-x64"),
                ssh_keys=tuple(str(k) for k in do_data.get("ssh_keys", []) or []),
                volumes=tuple(str(v) for v in do_data.get("volumes", []) or []),
                tags=tuple(str(t) for t in do_data.get("tags", []) or []),
            ),
            ssh=SSHConfig(
                username=ssh_data.get("username", "root"),
                private_key_path=str(ssh_data.get("private_key_path", "") or ""),
                port=int(ssh_data.get("port", 22)),
                timeout_sec=int(ssh_data.get("timeout_sec", 30)),
            ),
            lifecycle=LifecycleConfig(
                poll_interval_sec=float(lc_data.get("poll_interval_sec", 5)),
                poll_timeout_sec=float(lc_data.get("poll_timeout_sec", 600)),
                history_size=int(lc_data.get("history_size", 100)),
            ),
            bot=BotConfig(
                token=str(bot_data.get("token", "") or ""),
                chat_id=int(chat_id) if chat_id not in (None, "") else None,
            ),
        )

    def validate(self):
        """Reject settings the controller cannot run with."""
        problems = []
        lifecycle = self.lifecycle
        if lifecycle.poll_interval_sec <= 0:
            problems.append(f"lifecycle.poll_interval_sec must be > 0, got {lifecycle.poll_interval_sec}")
        if lifecycle.poll_timeout_sec < 0:
            problems.append(f"lifecycle.poll_timeout_sec must be >= 0, got {lifecycle.poll_timeout_sec}")
        if lifecycle.history_size < 1:
            problems.append(f"lifecycle.history_size must be >= 1, got {lifecycle.history_size}")
        if not 1 <= self.ssh.port <= 65535:
            problems.append(f"ssh.port must be 1-65535, got {self.ssh.port}")
        if self.ssh.timeout_sec <= 0:
            problems.append(f"ssh.timeout_sec must be > 0, got {self.ssh.timeout_sec}")
        for key in ("name", "region", "size", "image"):
            if not getattr(self.digitalocean, key):
                problems.append(f"digitalocean.{key} must not be empty")
        if problems:
            raise ConfigError("; ".join(problems))

    def require_token(self) -> str:
        if not self.digitalocean.token:
            raise ConfigError("digitalocean.token is not set (DIGITALOCEAN_TOKEN)")
        return self.digitalocean.token


# dotted key -> (environment variable, coercion)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "digitalocean.token": ("DIGITALOCEAN_TOKEN", str),
    "digitalocean.region": ("DIGITALOCEAN_REGION", str),
    "digitalocean.size": ("DIGITALOCEAN_SIZE", str),
    "ssh.username": ("SSH_USERNAME", str),
    "ssh.private_key_path": ("SSH_PRIVATEKEY", str),
    "ssh.port": ("SSH_PORT", int),
    "lifecycle.poll_interval_sec": ("POLL_INTERVAL_SEC", float),
    "lifecycle.poll_timeout_sec": ("POLL_TIMEOUT_SEC", float),
    "bot.token": ("TELEGRAM_BOT_TOKEN", str),
    "bot.chat_id": ("TELEGRAM_CHAT_ID", int),
}


def _set_dotted(data: Dict[str, Any], dotted_key: str, value: Any):
    section, _, key = dotted_key.partition(".")
    if not isinstance(data.get(section), dict):
        data[section] = {}
    data[section][key] = value


def apply_env_overrides(data: Dict[str, Any], environ=None) -> Dict[str, Any]:
    """Return a copy of ``data`` with the ENV_OVERRIDES that are set applied.

    Raises:
        ConfigError: a variable is set but cannot be read as its type.
    """
    environ = os.environ if environ is None else environ
    merged = copy.deepcopy(data)
    for dotted_key, (env_name, coerce) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as e:
            raise ConfigError(f"{env_name}={raw!r} is not a valid {coerce.__name__}") from e
        _set_dotted(merged, dotted_key, value)
    return merged


def load_config(config_path: str | Path = "config/mcdroplet.defaults.yml") -> DropletConfig:
    """Read the YAML defaults, apply environment overrides, validate."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level, got {type(data).__name__}")

    return DropletConfig.from_dict(apply_env_overrides(data))

"""Runtime configuration for the scheduled swap worker."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

BASE_CHAIN_ID = 8453


def _parse_int_env(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw, 0)
    except ValueError:
        logger.warning("Invalid integer for %s: %s", name, raw)
        return default
    return value


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_json_env(name: str) -> Optional[Dict[str, Any]]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Failed to decode JSON payload for %s", name)
        return None
    if isinstance(parsed, dict):
        return parsed
    logger.warning("Expected JSON object for %s, received %s", name, type(parsed).__name__)
    return None


@dataclass
class WorkerSettings:
    """Loaded worker configuration."""

    rpc_url: str
    app_id: int
    ability_url: str
    delegation_registry: str
    token_list_url: str
    chain_id: int = BASE_CHAIN_ID
    ability_headers: Dict[str, str] = field(default_factory=dict)
    bundler_url: Optional[str] = None
    bundler_headers: Dict[str, str] = field(default_factory=dict)
    gas_sponsor: bool = False
    gas_sponsor_api_key: Optional[str] = None
    gas_sponsor_policy_id: Optional[str] = None
    token_cache_ttl_seconds: int = 300
    confirm_poll_interval_seconds: float = 2.0
    confirm_timeout_seconds: float = 120.0
    state_dir: str = "storage/dca"
    concurrency: int = 4
    poll_interval_seconds: int = 30
    retry_attempts: int = 1
    retry_backoff_seconds: float = 5.0

    def __post_init__(self) -> None:
        if not self.rpc_url:
            raise ConfigurationError("rpc_url is required")
        if not self.ability_url:
            raise ConfigurationError("ability_url is required")
        if not self.token_list_url:
            raise ConfigurationError("token_list_url is required")
        if not isinstance(self.app_id, int) or self.app_id <= 0:
            raise ConfigurationError("app_id must be a positive integer")
        if not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ConfigurationError("chain_id must be a positive integer")
        if not isinstance(self.delegation_registry, str) or not _ADDRESS_PATTERN.match(self.delegation_registry):
            raise ConfigurationError("delegation_registry must be a 0x-prefixed 20-byte address")
        if self.gas_sponsor:
            if not self.bundler_url:
                raise ConfigurationError("bundler_url is required when gas sponsorship is enabled")
            if not self.gas_sponsor_api_key or not self.gas_sponsor_policy_id:
                raise ConfigurationError("gas sponsorship requires an API key and a policy id")
        if self.token_cache_ttl_seconds < 0:
            raise ConfigurationError("token_cache_ttl_seconds must be non-negative")
        if self.confirm_poll_interval_seconds <= 0 or self.confirm_timeout_seconds <= 0:
            raise ConfigurationError("confirmation polling values must be positive")
        if not isinstance(self.concurrency, int) or self.concurrency <= 0:
            raise ConfigurationError("concurrency must be a positive integer")
        if not isinstance(self.retry_attempts, int) or self.retry_attempts <= 0:
            raise ConfigurationError("retry_attempts must be a positive integer")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WorkerSettings":
        def _resolve(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        def _headers(*keys: str) -> Dict[str, str]:
            raw = _resolve(*keys, default={}) or {}
            return {str(k): str(v) for k, v in dict(raw).items()}

        try:
            return cls(
                rpc_url=str(_resolve("rpc_url", "rpcUrl", default="")),
                app_id=int(_resolve("app_id", "appId", default=0)),
                ability_url=str(_resolve("ability_url", "abilityUrl", default="")),
                delegation_registry=str(_resolve("delegation_registry", "delegationRegistry", default="")),
                token_list_url=str(_resolve("token_list_url", "tokenListUrl", default="")),
                chain_id=int(_resolve("chain_id", "chainId", default=BASE_CHAIN_ID)),
                ability_headers=_headers("ability_headers", "abilityHeaders"),
                bundler_url=_resolve("bundler_url", "bundlerUrl"),
                bundler_headers=_headers("bundler_headers", "bundlerHeaders"),
                gas_sponsor=bool(_resolve("gas_sponsor", "gasSponsor", default=False)),
                gas_sponsor_api_key=_resolve("gas_sponsor_api_key", "gasSponsorApiKey"),
                gas_sponsor_policy_id=_resolve("gas_sponsor_policy_id", "gasSponsorPolicyId"),
                token_cache_ttl_seconds=int(_resolve("token_cache_ttl_seconds", "tokenCacheTtlSeconds", default=300)),
                confirm_poll_interval_seconds=float(
                    _resolve("confirm_poll_interval_seconds", "confirmPollIntervalSeconds", default=2.0)
                ),
                confirm_timeout_seconds=float(
                    _resolve("confirm_timeout_seconds", "confirmTimeoutSeconds", default=120.0)
                ),
                state_dir=str(_resolve("state_dir", "stateDir", default="storage/dca")),
                concurrency=int(_resolve("concurrency", default=4)),
                poll_interval_seconds=int(_resolve("poll_interval_seconds", "pollIntervalSeconds", default=30)),
                retry_attempts=int(_resolve("retry_attempts", "retryAttempts", default=1)),
                retry_backoff_seconds=float(_resolve("retry_backoff_seconds", "retryBackoffSeconds", default=5.0)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid worker configuration: {exc}") from exc

    @classmethod
    def from_env(cls, base: Optional[Mapping[str, Any]] = None) -> "WorkerSettings":
        """Build settings from ``DCA_*`` environment variables over ``base``."""

        data: Dict[str, Any] = dict(base or {})
        string_keys = {
            "rpc_url": "DCA_RPC_URL",
            "ability_url": "DCA_ABILITY_URL",
            "delegation_registry": "DCA_DELEGATION_REGISTRY",
            "token_list_url": "DCA_TOKEN_LIST_URL",
            "bundler_url": "DCA_BUNDLER_URL",
            "gas_sponsor_api_key": "DCA_GAS_SPONSOR_API_KEY",
            "gas_sponsor_policy_id": "DCA_GAS_SPONSOR_POLICY_ID",
            "state_dir": "DCA_STATE_DIR",
        }
        for key, env_name in string_keys.items():
            value = os.getenv(env_name)
            if value:
                data[key] = value
        int_keys = {
            "app_id": "DCA_APP_ID",
            "chain_id": "DCA_CHAIN_ID",
            "token_cache_ttl_seconds": "DCA_TOKEN_CACHE_TTL",
            "concurrency": "DCA_CONCURRENCY",
            "poll_interval_seconds": "DCA_POLL_INTERVAL",
            "retry_attempts": "DCA_RETRY_ATTEMPTS",
        }
        for key, env_name in int_keys.items():
            value = _parse_int_env(env_name)
            if value is not None:
                data[key] = value
        confirm_timeout = _parse_int_env("DCA_CONFIRM_TIMEOUT_MS")
        if confirm_timeout:
            data["confirm_timeout_seconds"] = max(1.0, confirm_timeout / 1000)
        confirm_poll = _parse_int_env("DCA_CONFIRM_POLL_INTERVAL_MS")
        if confirm_poll:
            data["confirm_poll_interval_seconds"] = max(0.2, confirm_poll / 1000)
        if os.getenv("DCA_GAS_SPONSOR") is not None:
            data["gas_sponsor"] = _parse_bool_env("DCA_GAS_SPONSOR")
        ability_headers = _parse_json_env("DCA_ABILITY_HEADERS")
        if ability_headers:
            data["ability_headers"] = ability_headers
        bundler_headers = _parse_json_env("DCA_BUNDLER_HEADERS")
        if bundler_headers:
            data["bundler_headers"] = bundler_headers
        return cls.from_mapping(data)

    def redacted(self) -> Dict[str, Any]:
        """Return the settings as a mapping safe to log."""

        payload = {item.name: getattr(self, item.name) for item in fields(self)}
        if payload.get("gas_sponsor_api_key"):
            payload["gas_sponsor_api_key"] = "***"
        return payload


def load_settings(path: str | Path | None = None) -> WorkerSettings:
    """Load settings from an optional YAML file, overlaid with the environment."""

    data: Dict[str, Any] = {}
    if path is not None:
        text = Path(path).read_text(encoding="utf-8")
        parsed = yaml.safe_load(text) or {}
        if not isinstance(parsed, dict):
            raise ConfigurationError("worker configuration must be a mapping")
        data = parsed
    return WorkerSettings.from_env(data)

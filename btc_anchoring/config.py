"""Shared configuration loader for the anchoring service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml

from .wallet import MultisigAddress, derive_multisig


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".btc-anchoring.yaml"

DEFAULT_RPC_PORT = 18332
DEFAULT_RPC_TIMEOUT = 30.0
NETWORKS = ("mainnet", "testnet", "regtest")


def majority_count(validators_count: int) -> int:
    return validators_count * 2 // 3 + 1


@dataclass
class RPCConfig:
    """Configuration container for Bitcoin RPC connection details."""

    user: str
    password: str
    host: str = "127.0.0.1"
    port: int = DEFAULT_RPC_PORT
    use_https: bool = False
    wallet: str | None = None
    timeout: float = DEFAULT_RPC_TIMEOUT

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class AnchoringConfig:
    """One anchoring epoch: the validator set and its wallet parameters.

    Instances are immutable; a validator-set change produces a new config and
    therefore a new multisig wallet.
    """

    validators: tuple[str, ...]
    funding_tx: str | None = None
    fee: int = 1000
    frequency: int = 500
    utxo_confirmations: int = 5
    network: str = "testnet"

    def __post_init__(self) -> None:
        object.__setattr__(self, "validators", tuple(self.validators))
        if not self.validators:
            raise ConfigurationError("Anchoring config requires at least one validator key")
        if self.frequency <= 0:
            raise ConfigurationError("frequency must be positive")
        if self.fee < 0:
            raise ConfigurationError("fee must be non-negative")
        if self.network not in NETWORKS:
            raise ConfigurationError(f"Unknown network {self.network!r}; expected one of {NETWORKS}")

    def majority_count(self) -> int:
        return majority_count(len(self.validators))

    def multisig(self) -> MultisigAddress:
        return derive_multisig(self.validators, self.majority_count(), self.network)

    def nearest_anchoring_height(self, height: int) -> int:
        return height - height % self.frequency

    def to_dict(self) -> dict[str, Any]:
        return {
            "validators": list(self.validators),
            "funding_tx": self.funding_tx,
            "fee": self.fee,
            "frequency": self.frequency,
            "utxo_confirmations": self.utxo_confirmations,
            "network": self.network,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AnchoringConfig":
        if not isinstance(payload, Mapping):
            raise ConfigurationError("Anchoring config must be a mapping")
        validators = payload.get("validators")
        if not isinstance(validators, (list, tuple)):
            raise ConfigurationError("anchoring.validators must be a list of hex public keys")
        try:
            return cls(
                validators=tuple(str(key) for key in validators),
                funding_tx=payload.get("funding_tx"),
                fee=int(payload.get("fee", 1000)),
                frequency=int(payload.get("frequency", 500)),
                utxo_confirmations=int(payload.get("utxo_confirmations", 5)),
                network=str(payload.get("network", "testnet")),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid anchoring config: {exc}") from exc


@dataclass
class AnchoringNodeConfig:
    """Per-node settings: RPC access and the keys this validator signs with."""

    rpc: RPCConfig
    private_keys: dict[str, str] = field(default_factory=dict)
    service_key: str | None = None
    check_lect_frequency: int = 10
    lect_walk_limit: int = 100

    def private_key_for(self, address: str) -> str | None:
        return self.private_keys.get(address)


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    return None


def _coerce_number(raw: Any, kind: type, *, source: str, label: str) -> Any:
    if raw is None:
        return None
    try:
        return kind(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {label} in {source}: {raw}") from exc


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _parse_endpoint(raw: str | None) -> tuple[str | None, int | None, bool | None]:
    if not raw:
        return None, None, None
    parsed = urlparse(raw)
    if not parsed.scheme and not parsed.hostname:
        raise ConfigurationError(f"Invalid RPC endpoint URL: {raw}")
    host = parsed.hostname or None
    port = parsed.port
    use_https = parsed.scheme.lower() == "https" if parsed.scheme else None
    return host, port, use_https


def _resolve_path(config_path: str | Path | None) -> tuple[Path, bool]:
    if config_path is not None:
        return Path(config_path).expanduser(), True
    return DEFAULT_CONFIG_PATH, False


def _rpc_from_section(
    rpc_section: Mapping[str, Any],
    *,
    source: str,
    env_map: Mapping[str, str],
    overrides: Mapping[str, Any] | None,
) -> RPCConfig:
    override_map = dict(overrides or {})

    env_user = env_map.get("BTC_ANCHORING_RPC_USER")
    env_password = env_map.get("BTC_ANCHORING_RPC_PASSWORD")
    env_host = env_map.get("BTC_ANCHORING_RPC_HOST")
    env_port = _coerce_number(
        env_map.get("BTC_ANCHORING_RPC_PORT"), int, source="environment", label="port"
    )
    env_wallet = env_map.get("BTC_ANCHORING_RPC_WALLET")
    env_use_https = _coerce_bool(env_map.get("BTC_ANCHORING_RPC_USE_HTTPS"))
    env_timeout = _coerce_number(
        env_map.get("BTC_ANCHORING_RPC_TIMEOUT"), float, source="environment", label="timeout"
    )
    env_endpoint = env_map.get("BTC_ANCHORING_RPC_ENDPOINT") or env_map.get("BTC_ANCHORING_RPC_URL")

    endpoint_host, endpoint_port, endpoint_use_https = _parse_endpoint(
        _first_value(override_map.get("endpoint"), env_endpoint, rpc_section.get("endpoint"))
    )

    resolved_user = _first_value(override_map.get("user"), env_user, rpc_section.get("user"))
    resolved_password = _first_value(
        override_map.get("password"), env_password, rpc_section.get("password")
    )
    if not resolved_user or not resolved_password:
        raise ConfigurationError(
            "RPC credentials must be provided via BTC_ANCHORING_RPC_* environment variables or a config file"
        )

    resolved_host = _first_value(
        override_map.get("host"), endpoint_host, env_host, rpc_section.get("host"), "127.0.0.1"
    )
    resolved_port = _first_value(
        _coerce_number(override_map.get("port"), int, source="overrides", label="port"),
        endpoint_port,
        env_port,
        _coerce_number(rpc_section.get("port"), int, source=f"{source} rpc.port", label="port"),
        DEFAULT_RPC_PORT,
    )
    resolved_use_https = _first_value(
        _coerce_bool(override_map.get("use_https")),
        endpoint_use_https,
        env_use_https,
        _coerce_bool(rpc_section.get("use_https")),
        False,
    )
    resolved_timeout = _first_value(
        _coerce_number(override_map.get("timeout"), float, source="overrides", label="timeout"),
        env_timeout,
        _coerce_number(rpc_section.get("timeout"), float, source=f"{source} rpc.timeout", label="timeout"),
        DEFAULT_RPC_TIMEOUT,
    )
    if resolved_timeout <= 0:
        raise ConfigurationError("RPC timeout must be positive")
    resolved_wallet = _first_value(
        override_map.get("wallet"), env_wallet, rpc_section.get("wallet")
    )

    return RPCConfig(
        user=resolved_user,
        password=resolved_password,
        host=resolved_host,
        port=resolved_port,
        use_https=bool(resolved_use_https),
        wallet=resolved_wallet,
        timeout=resolved_timeout,
    )


def load_rpc_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RPCConfig:
    """Load RPC configuration from environment variables and optional YAML."""

    env_map = os.environ if env is None else env
    path, explicit = _resolve_path(config_path)
    file_config = _load_config_file(path, required=explicit)
    rpc_section = file_config.get("rpc", {}) or {}
    if not isinstance(rpc_section, dict):
        raise ConfigurationError(f"Expected 'rpc' to be a mapping in {path}")
    return _rpc_from_section(rpc_section, source=str(path), env_map=env_map, overrides=overrides)


def load_node_config(
    config_path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> AnchoringNodeConfig:
    """Load the per-node section (RPC, signing keys, polling cadence)."""

    env_map = os.environ if env is None else env
    path, explicit = _resolve_path(config_path)
    file_config = _load_config_file(path, required=explicit)
    rpc_section = file_config.get("rpc", {}) or {}
    if not isinstance(rpc_section, dict):
        raise ConfigurationError(f"Expected 'rpc' to be a mapping in {path}")
    node_section = file_config.get("node", {}) or {}
    if not isinstance(node_section, dict):
        raise ConfigurationError(f"Expected 'node' to be a mapping in {path}")

    private_keys = node_section.get("private_keys", {}) or {}
    if not isinstance(private_keys, dict):
        raise ConfigurationError("node.private_keys must map multisig addresses to hex keys")

    check_frequency = _coerce_number(
        node_section.get("check_lect_frequency", 10), int, source=str(path), label="check_lect_frequency"
    )
    walk_limit = _coerce_number(
        node_section.get("lect_walk_limit", 100), int, source=str(path), label="lect_walk_limit"
    )
    if check_frequency <= 0:
        raise ConfigurationError("node.check_lect_frequency must be positive")

    return AnchoringNodeConfig(
        rpc=_rpc_from_section(rpc_section, source=str(path), env_map=env_map, overrides=None),
        private_keys={str(addr): str(key) for addr, key in private_keys.items()},
        service_key=node_section.get("service_key"),
        check_lect_frequency=check_frequency,
        lect_walk_limit=walk_limit,
    )


def load_anchoring_config(config_path: str | Path) -> AnchoringConfig:
    """Load the genesis anchoring epoch from the ``anchoring`` YAML section."""

    path = Path(config_path).expanduser()
    file_config = _load_config_file(path, required=True)
    section = file_config.get("anchoring")
    if section is None:
        raise ConfigurationError(f"Expected an 'anchoring' section in {path}")
    return AnchoringConfig.from_dict(section)

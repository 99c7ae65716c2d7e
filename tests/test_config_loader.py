from pathlib import Path

import pytest

from btc_anchoring.config import (
    AnchoringConfig,
    ConfigurationError,
    RPCConfig,
    load_anchoring_config,
    load_node_config,
    load_rpc_config,
)
from conftest import build_validators


def test_load_rpc_config_prefers_environment_over_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
        rpc:
          user: file_user
          password: file_pass
          host: filehost
          port: 1111
          use_https: true
          wallet: filewallet
          endpoint: http://filehost:2222
        """
    )

    env_map = {
        "BTC_ANCHORING_RPC_USER": "env_user",
        "BTC_ANCHORING_RPC_PASSWORD": "env_pass",
        "BTC_ANCHORING_RPC_ENDPOINT": "https://envhost:3333",
        "BTC_ANCHORING_RPC_WALLET": "envwallet",
        "BTC_ANCHORING_RPC_USE_HTTPS": "1",
        "BTC_ANCHORING_RPC_TIMEOUT": "5",
    }

    config = load_rpc_config(config_path=config_path, env=env_map)

    assert isinstance(config, RPCConfig)
    assert config.user == "env_user"
    assert config.password == "env_pass"
    assert config.host == "envhost"
    assert config.port == 3333
    assert config.use_https is True
    assert config.wallet == "envwallet"
    assert config.timeout == 5.0
    assert config.base_url == "https://envhost:3333"


def test_load_rpc_config_reads_yaml_when_env_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / ".btc-anchoring.yaml"
    monkeypatch.setattr("btc_anchoring.config.DEFAULT_CONFIG_PATH", config_path)

    config_path.write_text(
        """
        rpc:
          user: yaml_user
          password: yaml_pass
          host: yamlhost
          port: 4545
          use_https: false
          wallet: yamlwallet
        """
    )

    config = load_rpc_config(env={})

    assert config.user == "yaml_user"
    assert config.password == "yaml_pass"
    assert config.host == "yamlhost"
    assert config.port == 4545
    assert config.use_https is False
    assert config.wallet == "yamlwallet"
    assert config.timeout == 30.0


def test_load_rpc_config_overrides_win(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("rpc:\n  user: u\n  password: p\n  port: 18443\n")

    config = load_rpc_config(
        config_path=config_path,
        env={"BTC_ANCHORING_RPC_HOST": "envhost"},
        overrides={"host": "cli-host", "port": None},
    )

    assert config.host == "cli-host"
    assert config.port == 18443


def test_load_rpc_config_requires_credentials(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("rpc: {}\n")

    with pytest.raises(ConfigurationError):
        load_rpc_config(config_path=config_path, env={})


def test_load_rpc_config_rejects_bad_port(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("rpc:\n  user: u\n  password: p\n")

    with pytest.raises(ConfigurationError):
        load_rpc_config(config_path=config_path, env={"BTC_ANCHORING_RPC_PORT": "abc"})


def test_load_rpc_config_requires_explicit_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_rpc_config(config_path=tmp_path / "missing.yaml", env={})


def test_load_node_config_reads_keys_and_cadence(tmp_path: Path) -> None:
    config_path = tmp_path / "node.yaml"
    config_path.write_text(
        """
        rpc:
          user: u
          password: p
        node:
          service_key: "aa"
          check_lect_frequency: 3
          private_keys:
            2MzQwSSnBHWHqSAqtTVQ6v47XtaisrJa1Vc: "01"
        """
    )

    node = load_node_config(config_path, env={})

    assert node.rpc.user == "u"
    assert node.service_key == "aa"
    assert node.check_lect_frequency == 3
    assert node.lect_walk_limit == 100
    assert node.private_key_for("2MzQwSSnBHWHqSAqtTVQ6v47XtaisrJa1Vc") == "01"
    assert node.private_key_for("unknown") is None


def test_load_node_config_rejects_zero_frequency(tmp_path: Path) -> None:
    config_path = tmp_path / "node.yaml"
    config_path.write_text("rpc:\n  user: u\n  password: p\nnode:\n  check_lect_frequency: 0\n")

    with pytest.raises(ConfigurationError):
        load_node_config(config_path, env={})


def test_load_anchoring_config_round_trips(tmp_path: Path) -> None:
    keys = build_validators(4).public_keys
    config_path = tmp_path / "anchoring.yaml"
    config_path.write_text(
        "anchoring:\n"
        "  network: regtest\n"
        "  fee: 2000\n"
        "  frequency: 100\n"
        "  validators:\n" + "".join(f'    - "{key}"\n' for key in keys)
    )

    cfg = load_anchoring_config(config_path)

    assert cfg.validators == tuple(keys)
    assert cfg.fee == 2000
    assert cfg.frequency == 100
    assert cfg.utxo_confirmations == 5
    assert cfg.network == "regtest"
    assert cfg.funding_tx is None
    assert cfg.majority_count() == 3
    assert AnchoringConfig.from_dict(cfg.to_dict()) == cfg


def test_anchoring_config_validation() -> None:
    keys = build_validators(2).public_keys

    with pytest.raises(ConfigurationError):
        AnchoringConfig(validators=())
    with pytest.raises(ConfigurationError):
        AnchoringConfig(validators=tuple(keys), frequency=0)
    with pytest.raises(ConfigurationError):
        AnchoringConfig(validators=tuple(keys), network="signet")
    with pytest.raises(ConfigurationError):
        AnchoringConfig.from_dict({"validators": "not-a-list"})


def test_nearest_anchoring_height() -> None:
    cfg = AnchoringConfig(validators=tuple(build_validators(1).public_keys), frequency=500)

    assert cfg.nearest_anchoring_height(0) == 0
    assert cfg.nearest_anchoring_height(499) == 0
    assert cfg.nearest_anchoring_height(500) == 500
    assert cfg.nearest_anchoring_height(1234) == 1000

from pathlib import Path

import pytest

from offline_lease.config import ConfigurationError, LeaseConfig, load_lease_config
from offline_lease.kdf import PBKDF2_ITERATIONS
from offline_lease.model import MAX_OFFLINE_HOURS


def test_load_lease_config_prefers_environment_over_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
        lease:
          storage_dir: /var/lib/file-lease
          max_offline_hours: 4
          kdf_iterations: 200000
        """
    )

    env_map = {
        "OFFLINE_LEASE_STORAGE_DIR": str(tmp_path / "env-data"),
        "OFFLINE_LEASE_MAX_OFFLINE_HOURS": "2.5",
    }

    config = load_lease_config(config_path=config_path, env=env_map)

    assert isinstance(config, LeaseConfig)
    assert config.storage_dir == tmp_path / "env-data"
    assert config.max_offline_hours == 2.5
    assert config.kdf_iterations == 200000


def test_overrides_win_over_everything(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("offline_lease.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    env_map = {"OFFLINE_LEASE_STORAGE_DIR": str(tmp_path / "env-data")}

    config = load_lease_config(
        config_path=None,
        env=env_map,
        overrides={"storage_dir": tmp_path / "cli-data", "max_offline_hours": "0.25"},
    )

    assert config.storage_dir == tmp_path / "cli-data"
    assert config.max_offline_hours == 0.25


def test_defaults_when_nothing_configured(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("offline_lease.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    config = load_lease_config(env={})

    assert config.max_offline_hours == MAX_OFFLINE_HOURS
    assert config.kdf_iterations == PBKDF2_ITERATIONS


def test_explicit_config_path_must_exist(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_lease_config(config_path=tmp_path / "missing.yaml", env={})


def test_rejects_weak_kdf_iterations(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("lease:\n  kdf_iterations: 1000\n")

    with pytest.raises(ConfigurationError):
        load_lease_config(config_path=config_path, env={})


@pytest.mark.parametrize("raw", ["0", "-1", "soon"])
def test_rejects_bad_budget(raw: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("offline_lease.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    with pytest.raises(ConfigurationError):
        load_lease_config(config_path=None, env={"OFFLINE_LEASE_MAX_OFFLINE_HOURS": raw})


def test_rejects_non_mapping_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError):
        load_lease_config(config_path=config_path, env={})

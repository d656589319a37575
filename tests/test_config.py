from __future__ import annotations

import pytest

from congregate import config


@pytest.fixture()
def isolated_env(monkeypatch, tmp_path):
    for key in list(config.DEFAULTS):
        monkeypatch.delenv(f"CONGREGATE_{key.upper()}", raising=False)
    for key in ("CONFIG", "DATA_DIR", "DB"):
        monkeypatch.delenv(f"CONGREGATE_{key}", raising=False)
    monkeypatch.setenv("CONGREGATE_BASE_DIR", str(tmp_path))
    monkeypatch.setattr(config, "settings", config.settings)
    return tmp_path


def test_defaults_apply_without_config(isolated_env):
    settings = config.load_settings()

    assert settings.popularity_threshold == 20
    assert settings.proximity_radius_miles == 30.0
    assert settings.cache_backend == "memory"
    assert settings.database_path == isolated_env / "data" / "congregate.db"
    assert settings.sqlalchemy_url.startswith("sqlite:///")


def test_env_overrides_toml(isolated_env, monkeypatch):
    (isolated_env / "congregate.toml").write_text(
        'popularity_threshold = 12\nproximity_radius_miles = 15.5\ncache_backend = "redis"\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("CONGREGATE_POPULARITY_THRESHOLD", "7")
    monkeypatch.setenv("CONGREGATE_ENABLE_SCHEDULER", "off")

    settings = config.load_settings()

    assert settings.popularity_threshold == 7
    assert settings.proximity_radius_miles == 15.5
    assert settings.cache_backend == "redis"
    assert settings.enable_scheduler is False


def test_invalid_values_are_rejected(isolated_env, monkeypatch):
    monkeypatch.setenv("CONGREGATE_CACHE_BACKEND", "memcached")
    with pytest.raises(ValueError):
        config.load_settings()

    monkeypatch.setenv("CONGREGATE_CACHE_BACKEND", "memory")
    monkeypatch.setenv("CONGREGATE_ENABLE_SCHEDULER", "sometimes")
    with pytest.raises(ValueError):
        config.load_settings()


def test_update_config_file_merges_and_reloads(isolated_env):
    path = isolated_env / "congregate.toml"

    updated = config.update_config_file({"popularity_threshold": "25", "bogus": 1}, path=path)
    again = config.update_config_file({"push_backend": "expo"}, path=path)

    assert updated.popularity_threshold == 25
    assert again.popularity_threshold == 25
    assert again.push_backend == "expo"
    assert "bogus" not in path.read_text(encoding="utf-8")
    assert config.settings is again


def test_settings_as_dict_stringifies_paths(isolated_env):
    payload = config.settings_as_dict(config.load_settings())

    assert payload["data_dir"] == str(isolated_env / "data")
    assert "config_path" not in payload


def test_invalid_update_leaves_file_untouched(isolated_env):
    path = isolated_env / "congregate.toml"
    config.update_config_file({"popularity_threshold": 9}, path=path)
    before = path.read_text(encoding="utf-8")

    with pytest.raises(ValueError):
        config.update_config_file({"push_backend": "pigeon"}, path=path)

    assert path.read_text(encoding="utf-8") == before

from __future__ import annotations
import json
from pathlib import Path
import pytest
from grip_installer import (
    DEFAULT_REGISTRY_NAME,
    DEFAULT_REGISTRY_URL,
    CannotRemoveDefaultRegistry,
    Config,
    ConfigError,
    InvalidRegistryName,
    Registry,
    RegistryAlreadyExists,
    RegistryNotFound,
    get_config_dir,
    get_data_dir,
    registry_cache_dir,
    sort_registries,
)


def test_load_absent(tmp_path: Path) -> None:
    config = Config.load(tmp_path / "config.json")
    assert config.registries == [
        Registry(name=DEFAULT_REGISTRY_NAME, url=DEFAULT_REGISTRY_URL, priority=0)
    ]


def test_save_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "sub" / "config.json"
    config = Config()
    config.add_registry("extra", "https://example.com/index.json", priority=5)
    config.save(path)
    assert Config.load(path) == config
    with path.open() as fp:
        assert json.load(fp) == {
            "registries": [
                {"name": "default", "url": DEFAULT_REGISTRY_URL, "priority": 0},
                {
                    "name": "extra",
                    "url": "https://example.com/index.json",
                    "priority": 5,
                },
            ]
        }


def test_load_adds_missing_default(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"registries": [{"name": "mine", "url": "/srv/index.json"}]})
    )
    assert [r.name for r in Config.load(path).registries] == ["default", "mine"]


@pytest.mark.parametrize(
    "content",
    [
        "[",
        '{"registries": {}}',
        '{"registries": [{"url": "x"}]}',
        '{"registries": [{"name": "x"}]}',
        '{"registries": [{"name": "x", "url": "y", "priority": "high"}]}',
        '{"registries": [{"name": "", "url": "y"}]}',
        '{"registries": [{"name": "..", "url": "y"}]}',
        '{"registries": [{"name": "a/b", "url": "y"}]}',
    ],
)
def test_load_malformed(tmp_path: Path, content: str) -> None:
    path = tmp_path / "config.json"
    path.write_text(content)
    with pytest.raises(ConfigError):
        Config.load(path)


BAD_NAMES = ["", ".", "..", "a/b", "../..", "a\\b"]


@pytest.mark.parametrize("name", BAD_NAMES)
def test_add_registry_bad_name(name: str) -> None:
    config = Config()
    with pytest.raises(InvalidRegistryName):
        config.add_registry(name, "https://example.com/index.json")
    assert [r.name for r in config.registries] == ["default"]


def test_add_registry_without_url() -> None:
    config = Config()
    with pytest.raises(ConfigError):
        config.add_registry("extra", "")
    assert config.get_registry("extra") is None


@pytest.mark.parametrize("name", BAD_NAMES)
def test_registry_cache_dir_bad_name(tmp_path: Path, name: str) -> None:
    with pytest.raises(InvalidRegistryName):
        registry_cache_dir(tmp_path, name)


def test_registry_cache_dir(tmp_path: Path) -> None:
    assert registry_cache_dir(tmp_path, "extra") == tmp_path / "registries" / "extra"


def test_add_registry_duplicate() -> None:
    config = Config()
    config.add_registry("extra", "https://example.com/a.json")
    with pytest.raises(RegistryAlreadyExists):
        config.add_registry("extra", "https://example.com/b.json")
    with pytest.raises(RegistryAlreadyExists):
        config.add_registry("default", "https://example.com/c.json")
    assert [r.url for r in config.registries if r.name == "extra"] == [
        "https://example.com/a.json"
    ]


@pytest.mark.parametrize(
    "registries",
    [
        [],
        [Registry("default", "https://example.com/index.json")],
        [Registry("other", "https://example.com/index.json")],
    ],
)
def test_remove_default_registry(registries: list[Registry]) -> None:
    config = Config(registries=list(registries))
    with pytest.raises(CannotRemoveDefaultRegistry):
        config.remove_registry("default")
    assert config.registries == registries


def test_remove_unknown_registry() -> None:
    config = Config()
    with pytest.raises(RegistryNotFound):
        config.remove_registry("ghost")
    assert [r.name for r in config.registries] == ["default"]


def test_remove_registry() -> None:
    config = Config()
    config.add_registry("extra", "https://example.com/index.json")
    assert config.remove_registry("extra").name == "extra"
    assert config.get_registry("extra") is None


def test_sort_registries() -> None:
    registries = [
        Registry("a", "u1", priority=10),
        Registry("b", "u2", priority=0),
        Registry("c", "u3", priority=10),
        Registry("d", "u4", priority=-1),
        Registry("e", "u5", priority=0),
    ]
    assert [r.name for r in sort_registries(registries)] == ["d", "b", "e", "a", "c"]


def test_dir_env_overrides(tmp_path: Path) -> None:
    assert get_data_dir() == tmp_path / "grip-data"
    assert get_config_dir() == tmp_path / "grip-config"


def test_xdg_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("GRIP_DATA_DIR")
    monkeypatch.delenv("GRIP_CONFIG_DIR")
    monkeypatch.setattr("grip_installer.ON_WINDOWS", False)
    monkeypatch.setattr("grip_installer.ON_MACOS", False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    assert get_data_dir() == tmp_path / "xdg-data" / "grip"
    assert get_config_dir() == tmp_path / "xdg-config" / "grip"

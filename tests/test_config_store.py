"""Tests for the JSON-backed configuration store and path conventions."""

import json
import sys
import threading
from pathlib import Path
from unittest.mock import patch

import platformdirs
import pytest

from koboldkit.config_store import BackendConfig, ConfigStore
from koboldkit.notifications import Channel, NotificationBus
from koboldkit import paths
from koboldkit.paths import config_file_path, default_install_dir


@pytest.fixture
def store(tmp_path):
    return ConfigStore(tmp_path / "config.json")


# ============================================================================
# TestKeyValue
# ============================================================================

class TestKeyValue:

    def test_default_frontend_preference(self, store):
        assert store.get("frontendPreference") == "koboldcpp"

    def test_set_and_get(self, store):
        store.set("frontendPreference", "sillytavern")
        assert store.get("frontendPreference") == "sillytavern"
        assert ConfigStore(store.path).get("frontendPreference") == "sillytavern"

    def test_missing_key_uses_caller_default(self, store):
        assert store.get("nope") is None
        assert store.get("nope", 42) == 42

    def test_set_none_removes_key(self, store):
        store.set("selectedConfig", "a")
        store.set("selectedConfig", None)
        assert "selectedConfig" not in json.loads(store.path.read_text())

    def test_corrupt_file_reads_as_empty(self, store):
        store.path.write_text("{broken")
        assert store.get("installDir") is None
        store.set("installDir", "/tmp/x")
        assert store.get("installDir") == "/tmp/x"

    def test_write_is_atomic(self, store):
        store.set("a", 1)
        with patch("koboldkit.config_store.json.dump", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.set("b", 2)
        assert json.loads(store.path.read_text()) == {"a": 1}
        assert [p.name for p in store.path.parent.iterdir()] == ["config.json"]


# ============================================================================
# TestNamedConfigs
# ============================================================================

class TestNamedConfigs:

    def test_save_and_load(self, store):
        store.save_config(BackendConfig(name="llama", args=["--model", "llama.gguf", "--port", "5002"]))
        loaded = store.load_config("llama")
        assert loaded == BackendConfig(name="llama", args=["--model", "llama.gguf", "--port", "5002"])

    def test_last_write_wins(self, store):
        store.save_config(BackendConfig(name="llama", args=["--port", "5001"]))
        store.save_config(BackendConfig(name="llama", args=["--port", "6000"]))
        assert store.load_config("llama").args == ["--port", "6000"]
        assert store.list_configs() == ["llama"]

    def test_list_and_delete(self, store):
        store.save_config(BackendConfig(name="b", args=[]))
        store.save_config(BackendConfig(name="a", args=[]))
        store.set_selected_config("a")
        assert store.list_configs() == ["a", "b"]

        assert store.delete_config("a") is True
        assert store.delete_config("a") is False
        assert store.list_configs() == ["b"]
        assert store.selected_config is None

    def test_unknown_config(self, store):
        assert store.load_config("missing") is None

    def test_name_required(self):
        with pytest.raises(ValueError):
            BackendConfig(name="", args=[])

    def test_concurrent_saves_keep_every_name(self, store):
        def save(i):
            store.save_config(BackendConfig(name=f"cfg{i}", args=[str(i)]))

        threads = [threading.Thread(target=save, args=(i,)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(store.list_configs()) == 10


# ============================================================================
# TestLauncherSettings
# ============================================================================

class TestLauncherSettings:

    def test_install_dir_defaults(self, store):
        assert store.install_dir == default_install_dir()

    def test_set_install_dir_notifies(self, tmp_path):
        bus = NotificationBus()
        events = []
        bus.subscribe(Channel.INSTALL_DIR_CHANGED, events.append)
        store = ConfigStore(tmp_path / "config.json", notifier=bus)

        store.set_install_dir(tmp_path / "backends")
        assert store.install_dir == tmp_path / "backends"
        assert events == [str(tmp_path / "backends")]

    def test_current_binary(self, store):
        assert store.current_binary is None
        store.set_current_binary(Path("/opt/kobold/koboldcpp-launcher"))
        assert store.current_binary == str(Path("/opt/kobold/koboldcpp-launcher"))


# ============================================================================
# TestPaths
# ============================================================================

class TestPaths:

    def test_env_override(self, config_dir):
        assert config_file_path() == config_dir / "config.json"

    def test_platform_convention(self, monkeypatch):
        monkeypatch.delenv("KOBOLDKIT_CONFIG_DIR", raising=False)
        expected = platformdirs.user_config_dir("koboldkit", appauthor=False, roaming=True)
        assert paths.config_dir() == Path(expected)
        assert paths.default_install_dir() == Path(platformdirs.user_data_dir("koboldkit", appauthor=False))

    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="XDG directories apply to Linux")
    def test_xdg_config_home_is_honoured(self, monkeypatch, tmp_path):
        monkeypatch.delenv("KOBOLDKIT_CONFIG_DIR", raising=False)
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        assert paths.config_dir() == tmp_path / "xdg" / "koboldkit"
        assert config_file_path() == tmp_path / "xdg" / "koboldkit" / "config.json"

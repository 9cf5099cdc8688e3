"""Tests for the command-line entry point and interactive shell."""

import io
import sys

import pytest

from koboldkit import __version__
from koboldkit.cli import LauncherShell, create_argument_parser, main, run_headless
from koboldkit.config_store import ConfigStore
from koboldkit.context import LauncherContext

from conftest import FakeProbe, make_asset, make_response, zip_bytes


LAUNCHER = "koboldcpp-launcher.exe" if sys.platform == "win32" else "koboldcpp-launcher"


def _script(tmp_path, body):
    binary = tmp_path / "backend" / "koboldcpp-launcher"
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text(f"#!/bin/sh\n{body}\n")
    binary.chmod(0o755)
    return binary


# ============================================================================
# TestArgumentParser
# ============================================================================

class TestArgumentParser:

    def test_version(self, capsys):
        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == __version__

    def test_cli_takes_remaining_args(self):
        args = create_argument_parser().parse_args(["--cli", "--model", "llama.gguf", "--port", "5002"])
        assert args.cli == ["--model", "llama.gguf", "--port", "5002"]
        assert args.version is False

    def test_no_flags_is_interactive(self):
        args = create_argument_parser().parse_args([])
        assert args.cli is None

    def test_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            create_argument_parser().parse_args(["--version", "--cli", "--model", "m.gguf"])


# ============================================================================
# TestHeadless
# ============================================================================

class TestHeadless:

    def test_no_backend_installed(self, tmp_path, capsys):
        store = ConfigStore(tmp_path / "config.json")
        assert run_headless(["--model", "m.gguf"], config=store) == 1
        assert "No backend installed" in capsys.readouterr().err

    @pytest.mark.posix_only
    def test_returns_backend_exit_code(self, tmp_path):
        store = ConfigStore(tmp_path / "config.json")
        store.set_current_binary(_script(tmp_path, 'exit "$1"'))
        assert run_headless(["7"], config=store) == 7
        assert run_headless(["0"], config=store) == 0

    @pytest.mark.posix_only
    def test_signal_exit_maps_to_128_plus_signal(self, tmp_path):
        store = ConfigStore(tmp_path / "config.json")
        store.set_current_binary(_script(tmp_path, "kill -TERM $$"))
        assert run_headless([], config=store) == 128 + 15


# ============================================================================
# TestShell
# ============================================================================

@pytest.fixture
def shell(tmp_path, mock_session):
    config_path = tmp_path / "config.json"
    ConfigStore(config_path).set("installDir", str(tmp_path / "backends"))
    context = LauncherContext(config_path=config_path, probe=FakeProbe(), session=mock_session)
    context.initialize()
    out = io.StringIO()
    yield LauncherShell(context, stdout=out), out
    context.shutdown()


class TestShell:

    def test_save_and_list_configs(self, shell):
        sh, out = shell
        sh.onecmd("save llama --model 'my model.gguf' --port 5002")
        sh.onecmd("configs")
        assert "llama: --model 'my model.gguf' --port 5002" in out.getvalue()

    def test_launch_errors_are_reported(self, shell):
        sh, out = shell
        assert sh.onecmd("launch") is False
        assert "Error: Failed to start backend: no backend installed" in out.getvalue()

    def test_status(self, shell):
        sh, out = shell
        sh.onecmd("status")
        text = out.getvalue()
        assert "AMD Ryzen 9 7950X" in text
        assert "GPU: none detected" in text
        assert "Backend: not installed" in text
        assert ("Acceleration: Metal" if sys.platform == "darwin" else "Acceleration: CPU") in text
        assert "State: idle" in text

    def test_update_without_backend(self, shell):
        sh, out = shell
        sh.onecmd("update")
        assert "No backend installed." in out.getvalue()

    def test_quit(self, shell):
        sh, _ = shell
        assert sh.onecmd("quit") is True

    def test_use_and_remove_by_folder_name(self, shell, mock_session):
        sh, out = shell
        install_dir = sh.context.installer.install_dir
        for name in ("koboldcpp-linux-x64.zip", "koboldcpp-linux-x64-rocm.zip"):
            mock_session.get.return_value = make_response(chunks=[zip_bytes({LAUNCHER: "binary"})])
            sh.context.install(make_asset(name), version="1.97")

        sh.onecmd("use 1.97")
        assert "Error: Version 1.97 is installed as several builds" in out.getvalue()

        sh.onecmd("use koboldcpp-linux-x64-rocm-1.97")
        assert sh.context.config.current_binary == str(install_dir / "koboldcpp-linux-x64-rocm-1.97" / LAUNCHER)
        assert "Using 1.97 (koboldcpp-linux-x64-rocm-1.97)" in out.getvalue()

        sh.onecmd("remove koboldcpp-linux-x64-1.97")
        assert not (install_dir / "koboldcpp-linux-x64-1.97").exists()
        assert (install_dir / "koboldcpp-linux-x64-rocm-1.97").exists()

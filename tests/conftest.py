"""Shared fixtures for koboldkit tests.

Provides a scripted hardware probe, mocked HTTP sessions and an isolated
config directory so no test touches the real home directory or network.
"""

import io
import sys
import tarfile
import zipfile
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from koboldkit.catalog import ReleaseAsset
from koboldkit.hardware import GPUDevice


def pytest_collection_modifyitems(config, items):
    if sys.platform != "win32":
        return
    skip_posix = pytest.mark.skip(reason="requires POSIX signals")
    for item in items:
        if "posix_only" in item.keywords:
            item.add_marker(skip_posix)


# ---------------------------------------------------------------------------
# Hardware probe
# ---------------------------------------------------------------------------

class FakeProbe:
    """CapabilityProbe returning canned values, or raising when given an exception."""

    def __init__(self, flags=None, info=None, gpus=None, cpu_error=None, gpu_error=None):
        self.flags = flags if flags is not None else ["fpu", "sse4_2", "avx", "avx2"]
        self.info = info if info is not None else ["AMD Ryzen 9 7950X", "16 cores"]
        self.gpus = gpus or []
        self.cpu_error = cpu_error
        self.gpu_error = gpu_error

    def cpu_flags(self) -> List[str]:
        if self.cpu_error:
            raise self.cpu_error
        return self.flags

    def cpu_info(self) -> List[str]:
        return self.info

    def gpu_devices(self) -> List[GPUDevice]:
        if self.gpu_error:
            raise self.gpu_error
        return self.gpus


@pytest.fixture
def fake_probe():
    return FakeProbe()


# ---------------------------------------------------------------------------
# Isolated filesystem
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """Point KOBOLDKIT_CONFIG_DIR at a temporary directory."""
    path = tmp_path / "config"
    monkeypatch.setenv("KOBOLDKIT_CONFIG_DIR", str(path))
    return path


@pytest.fixture
def install_dir(tmp_path):
    return tmp_path / "backends"


# ---------------------------------------------------------------------------
# HTTP mocks
# ---------------------------------------------------------------------------

def make_response(status_code: int = 200, json_data=None, chunks: Optional[List[bytes]] = None,
                  headers: Optional[dict] = None, json_error: Optional[Exception] = None) -> MagicMock:
    """Build a mock requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = json_data
    response.iter_content.return_value = iter(chunks or [])
    return response


@pytest.fixture
def mock_session():
    return MagicMock()


def release_json(tag: str = "v1.97", asset_names=("koboldcpp.exe", "koboldcpp-linux-x64")) -> dict:
    return {
        "tag_name": tag,
        "name": f"koboldcpp-{tag[1:]}",
        "published_at": "2025-08-01T12:00:00Z",
        "body": "Release notes",
        "assets": [
            {
                "name": name,
                "browser_download_url": f"https://github.com/LostRuins/koboldcpp/releases/download/{tag}/{name}",
                "size": 1572864,
                "created_at": "2025-08-01T11:00:00Z",
            }
            for name in asset_names
        ],
    }


def make_asset(name: str, size: int = 0, url: Optional[str] = None) -> ReleaseAsset:
    return ReleaseAsset(
        name=name,
        download_url=url or f"https://example.invalid/{name}",
        size_bytes=size,
    )


def zip_bytes(files: dict) -> bytes:
    """Create an in-memory zip archive from {name: content}."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def tar_gz_bytes(files: dict) -> bytes:
    """Create an in-memory tar.gz archive from {name: content}."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()

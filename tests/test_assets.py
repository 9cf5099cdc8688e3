"""Tests for asset classification, recommendation and display formatting."""

import pytest

from koboldkit.assets import (
    AssetVariant,
    asset_description,
    classify_asset,
    filter_assets_by_platform,
    format_device_summary,
    format_download_size,
    is_asset_compatible_with_platform,
    is_asset_recommended,
    select_assets,
)
from koboldkit.constants import ROCM_DOWNLOAD_URL
from koboldkit.hardware import CPUCapabilities, GPUDevice, HardwareProfile

from conftest import make_asset


RELEASE_NAMES = [
    "koboldcpp.exe",
    "koboldcpp_nocuda.exe",
    "koboldcpp_oldpc.exe",
    "koboldcpp-linux-x64",
    "koboldcpp-linux-x64-nocuda",
    "koboldcpp-linux-x64-oldpc",
    "koboldcpp-linux-x64-rocm",
    "koboldcpp-mac-arm64",
]


def _profile(*gpus: GPUDevice) -> HardwareProfile:
    return HardwareProfile(cpu=CPUCapabilities(avx=True, avx2=True, info=("test",)), gpus=gpus)


# ============================================================================
# TestClassifyAsset
# ============================================================================

class TestClassifyAsset:

    @pytest.mark.parametrize("name,variant", [
        ("koboldcpp.exe", AssetVariant.STANDARD),
        ("koboldcpp_nocuda.exe", AssetVariant.NOCUDA),
        ("koboldcpp_oldpc.exe", AssetVariant.OLDPC),
        ("koboldcpp-linux-x64-rocm", AssetVariant.ROCM),
        ("KOBOLDCPP-LINUX-X64-ROCM", AssetVariant.ROCM),
        ("koboldcpp-linux-x64-NoCuda", AssetVariant.NOCUDA),
        ("koboldcpp-mac-arm64", AssetVariant.STANDARD),
        ("", AssetVariant.STANDARD),
    ])
    def test_variants(self, name, variant):
        assert classify_asset(name) == variant

    def test_exhaustive_and_exclusive(self):
        names = RELEASE_NAMES + ["rocm-oldpc", "oldpc-nocuda", "x-rocm-nocuda", "weird name"]
        for name in names:
            variant = classify_asset(name)
            assert isinstance(variant, AssetVariant)
            assert classify_asset(name) is variant

    def test_description_follows_variant(self):
        assert asset_description("koboldcpp-linux-x64-rocm") == "Optimized for AMD GPUs with ROCm support."
        assert asset_description("koboldcpp.exe") == "Standard build that's ideal for most cases."


# ============================================================================
# TestRecommendation
# ============================================================================

class TestRecommendation:

    def test_rocm_recommended_with_amd(self):
        assert is_asset_recommended("koboldcpp-linux-x64-rocm", has_amd_gpu=True) is True

    def test_rocm_not_recommended_without_amd(self):
        assert is_asset_recommended("koboldcpp-linux-x64-rocm", has_amd_gpu=False) is False

    def test_standard_recommended_without_amd(self):
        assert is_asset_recommended("koboldcpp-linux-x64", has_amd_gpu=False) is True

    @pytest.mark.parametrize("name", ["koboldcpp-linux-x64-oldpc", "koboldcpp-linux-x64-nocuda"])
    def test_special_builds_never_recommended_without_amd(self, name):
        assert is_asset_recommended(name, has_amd_gpu=False) is False

    def test_select_assets_puts_recommended_first_and_keeps_order(self):
        assets = [make_asset(name) for name in RELEASE_NAMES]
        choices = select_assets(assets, _profile(), platform="linux")
        names = [choice.asset.name for choice in choices]
        assert names == [
            "koboldcpp-linux-x64",
            "koboldcpp-linux-x64-nocuda",
            "koboldcpp-linux-x64-oldpc",
            "koboldcpp-linux-x64-rocm",
        ]
        assert [choice.recommended for choice in choices] == [True, False, False, False]

    def test_select_assets_with_discrete_amd_gpu(self):
        assets = [make_asset(name) for name in RELEASE_NAMES]
        profile = _profile(GPUDevice(name="AMD Radeon RX 7900 XTX"))
        choices = select_assets(assets, profile, platform="linux")
        assert choices[0].asset.name == "koboldcpp-linux-x64-rocm"
        assert choices[0].variant == AssetVariant.ROCM
        assert sum(choice.recommended for choice in choices) == 1

    def test_integrated_amd_gpu_does_not_trigger_rocm(self):
        profile = _profile(GPUDevice(name="AMD Radeon 780M", is_integrated=True))
        assert profile.has_amd_gpu is False
        choices = select_assets([make_asset("koboldcpp-linux-x64-rocm")], profile, platform="linux")
        assert choices[0].recommended is False


# ============================================================================
# TestPlatformFilter
# ============================================================================

class TestPlatformFilter:

    @pytest.mark.parametrize("name,platform,expected", [
        ("koboldcpp.exe", "win32", True),
        ("koboldcpp-windows-x64.zip", "win32", True),
        ("koboldcpp-mac-arm64", "darwin", True),
        ("koboldcpp-linux-x64", "linux", True),
        ("koboldcpp-ubuntu.tar.gz", "linux", True),
        ("koboldcpp-linux-x64", "darwin", False),
        ("koboldcpp-mac-arm64", "linux", False),
        ("anything", "freebsd", True),
    ])
    def test_compatibility(self, name, platform, expected):
        assert is_asset_compatible_with_platform(name, platform) is expected

    def test_filters_tagged_assets(self):
        assets = [make_asset(name) for name in RELEASE_NAMES]
        names = [asset.name for asset in filter_assets_by_platform(assets, "darwin")]
        assert names == ["koboldcpp-mac-arm64"]

    def test_untagged_release_keeps_everything(self):
        assets = [make_asset("koboldcpp"), make_asset("koboldcpp-rocm")]
        assert filter_assets_by_platform(assets, "linux") == assets

    def test_untagged_assets_dropped_when_tagged_ones_exist(self):
        assets = [make_asset("koboldcpp"), make_asset("koboldcpp-linux-x64")]
        names = [asset.name for asset in filter_assets_by_platform(assets, "linux")]
        assert names == ["koboldcpp-linux-x64"]


# ============================================================================
# TestFormatting
# ============================================================================

class TestFormatting:

    @pytest.mark.parametrize("size,expected", [
        (1572864, "1.5 MB"),
        (0, ""),
        (None, ""),
        (1048576, "1 MB"),
        (524288000, "500 MB"),
    ])
    def test_format_download_size(self, size, expected):
        assert format_download_size(size) == expected

    def test_rocm_mirror_size_is_approximate(self):
        assert format_download_size(1572864, ROCM_DOWNLOAD_URL) == "~1.5 MB"

    def test_rocm_mirror_with_query_is_approximate(self):
        assert format_download_size(1572864, f"{ROCM_DOWNLOAD_URL}?build=1.97") == "~1.5 MB"

    def test_github_url_is_exact(self):
        url = "https://github.com/LostRuins/koboldcpp/releases/download/v1.97/koboldcpp-linux-x64"
        assert format_download_size(1572864, url) == "1.5 MB"

    def test_device_summary_orders_discrete_first(self):
        gpus = [
            GPUDevice(name="Intel UHD Graphics 770", is_integrated=True),
            GPUDevice(name="NVIDIA GeForce RTX 4090"),
        ]
        assert format_device_summary(gpus) == "NVIDIA GeForce RTX 4090, Intel UHD Graphics 770"

    def test_device_summary_truncates_and_counts(self):
        gpus = [
            GPUDevice(name="AMD Radeon RX 7900 XTX Phantom Gaming"),
            GPUDevice(name="NVIDIA RTX A6000"),
            GPUDevice(name="Intel Arc A770"),
            GPUDevice(name="AMD Radeon 780M", is_integrated=True),
        ]
        summary = format_device_summary(gpus)
        assert summary == "AMD Radeon RX 7900 XTX Ph…, NVIDIA RTX A6000 +2"

    def test_device_summary_empty(self):
        assert format_device_summary([]) == ""

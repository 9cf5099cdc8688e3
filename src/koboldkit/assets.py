#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Backend asset selection.

KoboldCpp publishes several builds per release and encodes both the target
platform and the build flavor in the asset file name:

    koboldcpp.exe                   Windows, standard (CUDA + Vulkan + CPU)
    koboldcpp_nocuda.exe            Windows, CUDA stripped
    koboldcpp_oldpc.exe             Windows, for CPUs without AVX2
    koboldcpp-linux-x64-rocm        Linux, AMD ROCm
    koboldcpp-mac-arm64             macOS

Everything here is a pure function of the names plus a HardwareProfile, so
the same ranking can be shown before and after download.
"""

import sys
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .catalog import ReleaseAsset
from .constants import PLATFORM_TOKENS, ROCM_DOWNLOAD_URL
from .hardware import GPUDevice, HardwareProfile
from .versioning import strip_asset_extensions

# Device badge limits
MAX_LISTED_DEVICES = 2
MAX_DEVICE_NAME_LENGTH = 25


class AssetVariant(str, Enum):
    """Binary build flavor inferred from an asset name."""
    STANDARD = "standard"
    NOCUDA = "nocuda"
    OLDPC = "oldpc"
    ROCM = "rocm"


VARIANT_DESCRIPTIONS = {
    AssetVariant.ROCM: "Optimized for AMD GPUs with ROCm support.",
    AssetVariant.OLDPC: "Meant for old PCs that cannot normally run the standard build.",
    AssetVariant.NOCUDA: "Standard build with NVIDIA CUDA removed for minimal file size.",
    AssetVariant.STANDARD: "Standard build that's ideal for most cases.",
}


class AssetChoice(BaseModel):
    """One row of the download list shown to the user."""
    model_config = ConfigDict(frozen=True)

    asset: ReleaseAsset = Field(..., description="The release asset")
    variant: AssetVariant = Field(..., description="Build flavor")
    recommended: bool = Field(False, description="Whether this is the build to install on this machine")
    description: str = Field("", description="Human-readable summary of the variant")


# ============================================================================
# PLATFORM
# ============================================================================

def current_platform() -> str:
    """Return the running platform as "win32", "darwin" or "linux"."""
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def _has_any_platform_token(name: str) -> bool:
    lowered = name.lower()
    return any(token in lowered for tokens in PLATFORM_TOKENS.values() for token in tokens)


def is_asset_compatible_with_platform(asset_name: str, platform: str) -> bool:
    """
    Check whether an asset name targets the given platform.

    Args:
        asset_name: Asset file name
        platform: "win32", "darwin" or "linux"; anything else is treated as compatible

    Returns:
        True if the name contains one of the platform's tokens
    """
    tokens = PLATFORM_TOKENS.get(platform)
    if tokens is None:
        return True
    lowered = asset_name.lower()
    return any(token in lowered for token in tokens)


def filter_assets_by_platform(assets: Sequence[ReleaseAsset], platform: str) -> List[ReleaseAsset]:
    """
    Keep the assets built for `platform`.

    When not a single asset carries any platform token the release is
    assumed to be platform-neutral and every asset is kept. This is a
    deliberate permissive fallback: untagged names are only trusted when
    there is nothing tagged to prefer.
    """
    if not any(_has_any_platform_token(asset.name) for asset in assets):
        return list(assets)
    return [asset for asset in assets if is_asset_compatible_with_platform(asset.name, platform)]


# ============================================================================
# CLASSIFICATION & RECOMMENDATION
# ============================================================================

def classify_asset(asset_name: str) -> AssetVariant:
    """
    Classify an asset into exactly one variant.

    Checks are case-insensitive and run in a fixed order: "oldpc" suffix,
    "nocuda" suffix, "rocm" anywhere in the name, otherwise standard. File
    extensions are removed first so "koboldcpp_oldpc.exe" is an oldpc build.
    """
    name = strip_asset_extensions(asset_name).lower()
    if name.endswith("oldpc"):
        return AssetVariant.OLDPC
    if name.endswith("nocuda"):
        return AssetVariant.NOCUDA
    if "rocm" in name:
        return AssetVariant.ROCM
    return AssetVariant.STANDARD


def is_asset_recommended(asset_name: str, has_amd_gpu: bool) -> bool:
    """
    Decide whether an asset is the recommended build.

    With a discrete AMD GPU only the ROCm build is recommended; otherwise
    only the standard build is.

    Example:
        >>> is_asset_recommended("koboldcpp-linux-x64-rocm", has_amd_gpu=True)
        True
        >>> is_asset_recommended("koboldcpp-linux-x64", has_amd_gpu=False)
        True
    """
    variant = classify_asset(asset_name)
    if has_amd_gpu:
        return variant == AssetVariant.ROCM
    return variant == AssetVariant.STANDARD


def asset_description(asset_name: str) -> str:
    return VARIANT_DESCRIPTIONS[classify_asset(asset_name)]


def select_assets(
    assets: Sequence[ReleaseAsset],
    profile: HardwareProfile,
    platform: Optional[str] = None,
) -> List[AssetChoice]:
    """
    Filter, classify and rank release assets for this machine.

    Args:
        assets: Candidate assets from a release
        profile: Detected hardware
        platform: Target platform; defaults to the running one

    Returns:
        AssetChoice rows with recommended entries first. The relative order
        of the remaining entries is the order the host listed them in.
    """
    platform = platform or current_platform()
    choices = []
    for asset in filter_assets_by_platform(assets, platform):
        choices.append(AssetChoice(
            asset=asset,
            variant=classify_asset(asset.name),
            recommended=is_asset_recommended(asset.name, profile.has_amd_gpu),
            description=asset_description(asset.name),
        ))
    # sorted() is stable, so only the recommended flag moves rows
    return sorted(choices, key=lambda choice: not choice.recommended)


# ============================================================================
# DISPLAY FORMATTING
# ============================================================================

def format_download_size(size_bytes: int, url: Optional[str] = None) -> str:
    """
    Format a byte count in megabytes for download buttons.

    Args:
        size_bytes: Size reported by the release host
        url: Download URL; sizes from the ROCm mirror are estimates and get a "~" prefix

    Returns:
        e.g. "1.5 MB", or "" when the size is unknown (0 or missing)
    """
    if not size_bytes:
        return ""
    megabytes = round(size_bytes / (1024 * 1024), 1)
    text = f"{megabytes:g} MB"
    if url and ROCM_DOWNLOAD_URL in url:
        return f"~{text}"
    return text


def _truncate(name: str) -> str:
    if len(name) <= MAX_DEVICE_NAME_LENGTH:
        return name
    return f"{name[:MAX_DEVICE_NAME_LENGTH]}…"


def format_device_summary(gpus: Sequence[GPUDevice]) -> str:
    """
    Summarize GPUs for a compact badge.

    Discrete devices come before integrated ones. At most two names are
    shown, each cut at 25 characters; the rest collapse into "+N".

    Example:
        >>> format_device_summary([GPUDevice(name="Intel UHD Graphics 770", is_integrated=True),
        ...                        GPUDevice(name="AMD Radeon RX 7900 XTX")])
        'AMD Radeon RX 7900 XTX, Intel UHD Graphics 770'
    """
    ordered = sorted(gpus, key=lambda gpu: gpu.is_integrated)
    shown = [_truncate(gpu.name) for gpu in ordered[:MAX_LISTED_DEVICES]]
    hidden = len(ordered) - len(shown)
    summary = ", ".join(shown)
    if hidden > 0:
        summary += f" +{hidden}"
    return summary

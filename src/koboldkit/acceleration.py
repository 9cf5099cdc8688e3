#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Acceleration backends offered by an installed KoboldCpp build.

A build ships one shared library per compute backend it was compiled with
(`koboldcpp_cublas`, `koboldcpp_hipblas`, `koboldcpp_vulkan`, ...), either
beside the launcher or in the PyInstaller `_internal` folder. Which of those
are present, crossed with the detected hardware, decides the acceleration
options a front end can offer for `launch`.
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .hardware import HardwareProfile

logger = logging.getLogger(__name__)

# Library stem for each backend a build can carry
BACKEND_LIBRARIES = {
    "cuda": "koboldcpp_cublas",
    "rocm": "koboldcpp_hipblas",
    "vulkan": "koboldcpp_vulkan",
    "noavx2": "koboldcpp_noavx2",
    "failsafe": "koboldcpp_failsafe",
}

BUNDLE_DIR_NAME = "_internal"


class AccelerationSupport(BaseModel):
    """Compute backends compiled into one installed build."""
    model_config = ConfigDict(frozen=True)

    cuda: bool = Field(False, description="NVIDIA CUDA (cuBLAS) library present")
    rocm: bool = Field(False, description="AMD ROCm (hipBLAS) library present")
    vulkan: bool = Field(False, description="Vulkan library present")
    noavx2: bool = Field(False, description="CPU library built without AVX2")
    failsafe: bool = Field(False, description="CPU library built without AVX")


class AccelerationOption(BaseModel):
    """One entry of the acceleration picker."""
    model_config = ConfigDict(frozen=True)

    value: str = Field(..., description="Identifier: cuda, rocm, vulkan or cpu")
    label: str = Field(..., description="Display name")
    devices: Tuple[str, ...] = Field(default_factory=tuple, description="Devices this option would run on")
    disabled: bool = Field(False, description="Compiled in but no matching hardware was found")


def _library_dirs(binary_dir: Path, platform: str) -> List[Path]:
    internal_dir = binary_dir / BUNDLE_DIR_NAME
    if platform == "win32":
        return [binary_dir, internal_dir]
    return [internal_dir, binary_dir]


def detect_acceleration_support(
    binary_path: Union[str, Path],
    platform: Optional[str] = None,
) -> AccelerationSupport:
    """
    Inspect the folder of an installed launcher for backend libraries.

    Never raises; an unreadable folder reports no support at all.

    Args:
        binary_path: Path of the launcher binary
        platform: sys.platform value to assume; the running one by default

    Example:
        >>> detect_acceleration_support("/opt/koboldkit/koboldcpp-linux-x64-1.97/koboldcpp-launcher")
        AccelerationSupport(cuda=True, rocm=False, vulkan=True, noavx2=True, failsafe=True)
    """
    platform = platform or sys.platform
    extension = ".dll" if platform == "win32" else ".so"
    search_dirs = _library_dirs(Path(binary_path).parent, platform)

    found = {}
    for backend, stem in BACKEND_LIBRARIES.items():
        filename = f"{stem}{extension}"
        try:
            found[backend] = any((directory / filename).is_file() for directory in search_dirs)
        except OSError as e:
            logger.debug(f"Could not check {filename} next to {binary_path}: {e}")
            found[backend] = False

    support = AccelerationSupport(**found)
    logger.debug(f"Acceleration support for {binary_path}: {support}")
    return support


def cpu_label(platform: Optional[str] = None) -> str:
    return "Metal" if (platform or sys.platform) == "darwin" else "CPU"


def available_accelerations(
    profile: HardwareProfile,
    support: Optional[AccelerationSupport],
    platform: Optional[str] = None,
    include_disabled: bool = False,
) -> List[AccelerationOption]:
    """
    Acceleration options for a build on this machine.

    GPU options appear when the build carries the library and a matching
    device was detected. With `include_disabled`, options whose library is
    present but whose hardware is missing are listed too, marked disabled
    and sorted after the usable ones. The CPU option (Metal on macOS) is
    always last among the usable ones and is the only option on macOS.

    Args:
        profile: Detected hardware
        support: Libraries of the current build; None when nothing is installed
        platform: sys.platform value to assume; the running one by default
        include_disabled: Also list compiled-in options without hardware
    """
    platform = platform or sys.platform
    cpu_devices = tuple(profile.cpu.info[:1])
    cpu_option = AccelerationOption(value="cpu", label=cpu_label(platform), devices=cpu_devices)
    if platform == "darwin" or support is None:
        return [cpu_option]

    gpu_candidates = [
        ("cuda", "CUDA", support.cuda, [gpu.name for gpu in profile.discrete_gpus if gpu.vendor == "NVIDIA"]),
        ("rocm", "ROCm", support.rocm, [gpu.name for gpu in profile.discrete_gpus if gpu.vendor == "AMD"]),
        ("vulkan", "Vulkan", support.vulkan, [gpu.name for gpu in profile.gpus]),
    ]

    options = []
    for value, label, compiled_in, devices in gpu_candidates:
        if not compiled_in:
            continue
        if devices or include_disabled:
            options.append(AccelerationOption(
                value=value,
                label=label,
                devices=tuple(devices),
                disabled=not devices,
            ))
    options.append(cpu_option)

    # Stable sort keeps the cuda, rocm, vulkan order within each group
    options.sort(key=lambda option: option.disabled)
    return options

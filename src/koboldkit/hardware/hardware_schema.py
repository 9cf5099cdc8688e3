#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Hardware Schema Definitions

Pydantic BaseModel schemas describing the hardware snapshot produced by
the HardwareDetector. A profile is frozen once built; detecting again
yields a new profile rather than patching the old one.
"""

from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# Substrings (lowercase) that imply the vendor of a device from its name
VENDOR_NAME_HINTS = (
    ("AMD", ("amd", "radeon")),
    ("NVIDIA", ("nvidia", "geforce", "rtx", "gtx", "quadro", "tesla")),
    ("Intel", ("intel", "iris", "uhd graphics", "arc ")),
    ("Apple", ("apple",)),
)


def vendor_from_name(name: str) -> str:
    """
    Infer a GPU vendor from its marketing name.

    Args:
        name: Device name as reported by the driver (e.g. "AMD Radeon RX 7900 XTX")

    Returns:
        One of "AMD", "NVIDIA", "Intel", "Apple" or "Unknown"
    """
    lowered = f"{name.lower()} "
    for vendor, hints in VENDOR_NAME_HINTS:
        if any(hint in lowered for hint in hints):
            return vendor
    return "Unknown"


class CPUCapabilities(BaseModel):
    """CPU instruction-set support relevant to backend build selection."""
    model_config = ConfigDict(frozen=True)

    avx: bool = Field(False, description="Whether the CPU reports the AVX flag")
    avx2: bool = Field(False, description="Whether the CPU reports the AVX2 flag")
    info: Tuple[str, ...] = Field(default_factory=tuple, description="Human-readable CPU facts (brand, cores, clock)")


class GPUDevice(BaseModel):
    """A single graphics device."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Device name as reported by the driver")
    is_integrated: bool = Field(False, description="True for iGPUs/APUs sharing system memory")
    memory_gb: Optional[float] = Field(None, description="Approximate dedicated memory in gigabytes")

    @property
    def vendor(self) -> str:
        return vendor_from_name(self.name)


class HardwareProfile(BaseModel):
    """
    Immutable hardware snapshot created once at startup.

    Consumed by the asset selector to decide which backend build to
    recommend and by the presentation layer for device badges.
    """
    model_config = ConfigDict(frozen=True)

    cpu: CPUCapabilities = Field(default_factory=CPUCapabilities, description="CPU capabilities")
    gpus: Tuple[GPUDevice, ...] = Field(default_factory=tuple, description="Detected GPU devices, no duplicates")

    @property
    def discrete_gpus(self) -> List[GPUDevice]:
        return [gpu for gpu in self.gpus if not gpu.is_integrated]

    @property
    def has_amd_gpu(self) -> bool:
        """True when at least one discrete AMD-class GPU is present."""
        return any(gpu.vendor == "AMD" for gpu in self.discrete_gpus)

    @property
    def has_nvidia_gpu(self) -> bool:
        return any(gpu.vendor == "NVIDIA" for gpu in self.discrete_gpus)


def fallback_profile() -> HardwareProfile:
    """Conservative profile used when probing fails."""
    return HardwareProfile(
        cpu=CPUCapabilities(avx=False, avx2=False, info=("CPU detection failed",)),
        gpus=(),
    )

"""
Hardware capability detection.

Provides the CPU/GPU snapshot that drives backend build recommendations.
"""

from .detector import CapabilityProbe, HardwareDetector, SystemProbe, detect
from .hardware_schema import (
    CPUCapabilities,
    GPUDevice,
    HardwareProfile,
    fallback_profile,
    vendor_from_name,
)
from .vulkan import parse_vulkan_summary

__all__ = [
    # Primary API
    "detect",
    "HardwareDetector",

    # Probe port
    "CapabilityProbe",
    "SystemProbe",

    # Schemas
    "HardwareProfile",
    "CPUCapabilities",
    "GPUDevice",
    "fallback_profile",
    "vendor_from_name",
    "parse_vulkan_summary",
]

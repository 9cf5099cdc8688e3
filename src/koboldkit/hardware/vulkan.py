"""
Vulkan device enumeration.

`vulkaninfo --summary` is the one source available on every desktop
platform that reports whether a device is discrete or integrated, so the
detector uses it to classify GPUs that vendor libraries do not cover.
"""

import logging
import re
import shutil
import subprocess
from typing import Dict, List

from .hardware_schema import GPUDevice

logger = logging.getLogger(__name__)

VULKANINFO_TIMEOUT_S = 3

_DEVICE_HEADER = re.compile(r"^\s*GPU\d+\s*:\s*$")
_DEVICE_TYPES = {
    "PHYSICAL_DEVICE_TYPE_DISCRETE_GPU": False,
    "PHYSICAL_DEVICE_TYPE_INTEGRATED_GPU": True,
}


def query_vulkan_summary(timeout: float = VULKANINFO_TIMEOUT_S) -> str:
    """
    Run `vulkaninfo --summary` and return its stdout.

    Returns:
        The raw summary text, or "" if the tool is missing, fails or times out
    """
    executable = shutil.which("vulkaninfo")
    if not executable:
        return ""
    try:
        result = subprocess.run(
            [executable, "--summary"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"vulkaninfo unavailable: {e}")
        return ""
    return result.stdout or ""


def parse_vulkan_summary(text: str) -> List[GPUDevice]:
    """
    Extract physical GPU devices from `vulkaninfo --summary` output.

    Each device block starts with a `GPUn:` header followed by
    `key = value` lines. Software rasterizers and virtual devices are
    skipped; only discrete and integrated GPUs are returned.

    Args:
        text: Raw summary output

    Returns:
        GPUDevice entries in the order the loader enumerated them
    """
    blocks: List[Dict[str, str]] = []
    current = None
    for line in text.splitlines():
        if _DEVICE_HEADER.match(line):
            current = {}
            blocks.append(current)
            continue
        if current is None or "=" not in line:
            continue
        key, value = line.split("=", 1)
        current[key.strip()] = value.strip()

    devices = []
    for block in blocks:
        device_type = block.get("deviceType", "")
        name = block.get("deviceName", "")
        if device_type not in _DEVICE_TYPES or not name:
            continue
        devices.append(GPUDevice(name=name, is_integrated=_DEVICE_TYPES[device_type]))
    return devices

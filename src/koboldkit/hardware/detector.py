#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Hardware capability detection for backend build selection.

The detector answers two questions the asset selector needs: which x86
instruction sets the CPU supports (AVX / AVX2 decide between the standard
and "oldpc" builds) and which GPUs are present (a discrete AMD card makes
the ROCm build the recommended one).

Probing goes through a small port, `CapabilityProbe`, so tests and
alternate platforms can substitute their own source of truth. The
production `SystemProbe` gathers information from:
1. py-cpuinfo for the CPU brand and flag list, psutil for core counts.
2. NVML (nvidia-ml-py, optional) for NVIDIA devices and their VRAM.
3. AMD SMI (amdsmi, optional) for AMD devices and their VRAM.
4. `vulkaninfo --summary` for every other GPU and the discrete/integrated split.
5. The Linux DRM sysfs tree for AMD devices when AMD SMI is unavailable.

Detection never raises. Any failure degrades to a conservative profile
and is reported as a DetectionDegraded warning.
"""

import logging
import os
import sys
import warnings
from typing import Dict, List, Optional, Protocol

from .hardware_schema import CPUCapabilities, GPUDevice, HardwareProfile, fallback_profile
from .vulkan import parse_vulkan_summary, query_vulkan_summary
from ..exceptions import DetectionDegraded
from ..utils import safe_import

logger = logging.getLogger(__name__)

# --- Constants ---
DRM_ROOT = "/sys/class/drm"
AMD_PCI_VENDOR_ID = "0x1002"

# VRAM below this share of system RAM marks an APU carve-out
APU_VRAM_RATIO = 0.05


class CapabilityProbe(Protocol):
    """Source of raw hardware facts. Implementations may raise freely."""

    def cpu_flags(self) -> List[str]:
        ...

    def cpu_info(self) -> List[str]:
        ...

    def gpu_devices(self) -> List[GPUDevice]:
        ...


class SystemProbe:
    """
    Probe the host system using vendor libraries and OS-level interfaces.

    Results from py-cpuinfo are cached on the instance because the call is
    slow (it may benchmark the clock); create a new probe to re-detect.
    """

    def __init__(self, drm_root: str = DRM_ROOT):
        self.drm_root = drm_root
        self._cpu_cache: Optional[Dict] = None

    # ------------------------------------------------------------------
    # CPU
    # ------------------------------------------------------------------

    def _get_cpu_details(self) -> Dict:
        if self._cpu_cache is None:
            cpuinfo = safe_import("cpuinfo", "py-cpuinfo")
            if cpuinfo is None:
                raise RuntimeError("py-cpuinfo is not available")
            self._cpu_cache = cpuinfo.get_cpu_info()
        return self._cpu_cache

    def cpu_flags(self) -> List[str]:
        return list(self._get_cpu_details().get("flags", []))

    def cpu_info(self) -> List[str]:
        details = self._get_cpu_details()
        info = []
        brand = details.get("brand_raw")
        if brand:
            info.append(brand)

        psutil = safe_import("psutil")
        if psutil:
            cores = psutil.cpu_count(logical=False)
            if cores:
                info.append(f"{cores} cores")

        speed = details.get("hz_advertised_friendly")
        if speed:
            info.append(speed)
        return info

    # ------------------------------------------------------------------
    # GPU
    # ------------------------------------------------------------------

    def _get_nvidia_gpus(self) -> List[GPUDevice]:
        """Enumerate NVIDIA GPUs through NVML. Empty when the driver is absent."""
        pynvml = safe_import("pynvml", "nvidia-ml-py")
        if not pynvml:
            return []

        devices = []
        try:
            pynvml.nvmlInit()
        except Exception as e:
            logger.debug(f"NVML unavailable: {e}")
            return []
        try:
            for i in range(pynvml.nvmlDeviceGetCount()):
                handle = pynvml.nvmlDeviceGetHandleByIndex(i)
                name = pynvml.nvmlDeviceGetName(handle)
                if isinstance(name, bytes):
                    name = name.decode("utf-8")
                mem_info = pynvml.nvmlDeviceGetMemoryInfo(handle)
                devices.append(GPUDevice(
                    name=name,
                    is_integrated=False,
                    memory_gb=round(mem_info.total / (1024**3), 2),
                ))
        finally:
            pynvml.nvmlShutdown()
        return devices

    def _system_ram_gb(self) -> float:
        psutil = safe_import("psutil")
        if not psutil:
            return 0.0
        try:
            return psutil.virtual_memory().total / (1024**3)
        except Exception as e:
            logger.debug(f"Could not read system memory: {e}")
            return 0.0

    def _get_amd_gpus(self) -> List[GPUDevice]:
        """Enumerate AMD GPUs through AMD SMI. Empty when ROCm is absent."""
        if sys.platform == "darwin":
            return []
        amdsmi = safe_import("amdsmi")
        if not amdsmi:
            return []

        try:
            amdsmi.amdsmi_init()
        except Exception as e:
            logger.debug(f"AMD SMI unavailable: {e}")
            return []

        devices = []
        system_ram_gb = self._system_ram_gb()
        try:
            for handle in amdsmi.amdsmi_get_processor_handles():
                try:
                    name = amdsmi.amdsmi_get_gpu_product_name(handle)
                    vram_info = amdsmi.amdsmi_get_gpu_vram_info(handle)
                except amdsmi.AmdSmiException as e:
                    logger.debug(f"Skipping AMD device: {e}")
                    continue
                if isinstance(name, bytes):
                    name = name.decode("utf-8")
                vram_gb = vram_info.get("vram_total", 0) / (1024**3) if vram_info else 0.0
                devices.append(GPUDevice(
                    name=name or "AMD GPU",
                    is_integrated=_is_apu(vram_gb, system_ram_gb),
                    memory_gb=round(vram_gb, 2) if vram_gb else None,
                ))
        except Exception as e:
            logger.debug(f"AMD SMI enumeration failed: {e}")
        finally:
            try:
                amdsmi.amdsmi_shut_down()
            except Exception as e:
                logger.debug(f"AMD SMI shutdown failed: {e}")
        return devices

    def _get_drm_gpus(self) -> List[GPUDevice]:
        """Read PCI vendor and VRAM size for each DRM card (Linux only)."""
        if not os.path.isdir(self.drm_root):
            return []

        system_ram_gb = self._system_ram_gb()
        devices = []
        for card in sorted(os.listdir(self.drm_root)):
            if not card.startswith("card") or "-" in card:
                continue
            device_path = os.path.join(self.drm_root, card, "device")
            vendor_id = _read_sysfs(os.path.join(device_path, "vendor"))
            vram_raw = _read_sysfs(os.path.join(device_path, "mem_info_vram_total"))
            if vendor_id != AMD_PCI_VENDOR_ID or not vram_raw:
                continue
            try:
                vram_gb = int(vram_raw) / (1024**3)
            except ValueError:
                continue
            if vram_gb <= 0:
                continue
            devices.append(GPUDevice(
                name="AMD GPU",
                is_integrated=_is_apu(vram_gb, system_ram_gb),
                memory_gb=round(vram_gb, 2),
            ))
        return devices

    def gpu_devices(self) -> List[GPUDevice]:
        """
        Combine all GPU sources.

        NVML entries win for NVIDIA cards and AMD SMI entries for AMD cards.
        Vulkan supplies the remaining devices. Without AMD SMI, DRM sysfs
        stands in for AMD devices when Vulkan is unavailable, and lends its
        VRAM size to a Vulkan AMD device only when each side reports exactly
        one, since card order and Vulkan order need not agree.
        """
        nvidia_devices = self._get_nvidia_gpus()
        amd_devices = self._get_amd_gpus()
        devices = nvidia_devices + amd_devices
        vulkan_devices = [
            gpu for gpu in parse_vulkan_summary(query_vulkan_summary())
            if not (nvidia_devices and gpu.vendor == "NVIDIA")
            and not (amd_devices and gpu.vendor == "AMD")
        ]
        if amd_devices:
            return devices + vulkan_devices

        drm_devices = self._get_drm_gpus()
        if not vulkan_devices:
            return devices + drm_devices

        vulkan_amd = [gpu for gpu in vulkan_devices if gpu.vendor == "AMD"]
        for gpu in vulkan_devices:
            if len(vulkan_amd) == 1 and len(drm_devices) == 1 and gpu is vulkan_amd[0]:
                gpu = gpu.model_copy(update={"memory_gb": drm_devices[0].memory_gb})
            devices.append(gpu)
        return devices


def _is_apu(vram_gb: float, system_ram_gb: float) -> bool:
    """APUs reserve a small slice of system RAM; discrete cards carry their own."""
    if not vram_gb or system_ram_gb <= 0:
        return False
    return vram_gb / system_ram_gb < APU_VRAM_RATIO


def _read_sysfs(path: str) -> str:
    try:
        with open(path, "r") as f:
            return f.read().strip()
    except OSError:
        return ""


def _dedupe(gpus: List[GPUDevice]) -> List[GPUDevice]:
    seen = set()
    unique = []
    for gpu in gpus:
        key = " ".join(gpu.name.lower().split())
        if key in seen:
            continue
        seen.add(key)
        unique.append(gpu)
    return unique


def _degrade(message: str, error: Exception) -> None:
    logger.warning(f"{message}: {error}")
    warnings.warn(f"{message}: {error}", DetectionDegraded, stacklevel=3)


def _has_flag(flags: List[str], name: str) -> bool:
    return any(name in flag.lower() for flag in flags)


class HardwareDetector:
    """
    Build a HardwareProfile from a CapabilityProbe.

    The probe may raise anything; the detector converts failures into the
    conservative fallback so hardware detection never blocks launching.
    """

    def __init__(self, probe: Optional[CapabilityProbe] = None):
        self.probe = probe if probe is not None else SystemProbe()

    def detect(self) -> HardwareProfile:
        try:
            flags = self.probe.cpu_flags()
            info = self.probe.cpu_info()
        except Exception as e:
            _degrade("CPU detection failed", e)
            return fallback_profile()

        cpu = CPUCapabilities(
            avx=_has_flag(flags, "avx"),
            avx2=_has_flag(flags, "avx2"),
            info=tuple(info) if info else ("CPU information unavailable",),
        )

        try:
            gpus = _dedupe(self.probe.gpu_devices())
        except Exception as e:
            _degrade("GPU detection failed", e)
            gpus = []

        profile = HardwareProfile(cpu=cpu, gpus=tuple(gpus))
        logger.info(
            f"Detected hardware: avx={cpu.avx} avx2={cpu.avx2} "
            f"gpus={[gpu.name for gpu in profile.gpus]}"
        )
        return profile


def detect(probe: Optional[CapabilityProbe] = None) -> HardwareProfile:
    """
    Probe the host and return an immutable HardwareProfile.

    Never raises. On probe failure returns avx=False, avx2=False,
    info=["CPU detection failed"] and no GPUs.

    Example:
        >>> profile = detect()
        >>> profile.cpu.avx2, profile.has_amd_gpu
        (True, False)
    """
    return HardwareDetector(probe).detect()

"""Safe import utilities for optional dependencies."""

import logging

logger = logging.getLogger(__name__)


def safe_import(module_name: str, package_name: str = None):
    """
    Safely import a module, returning None if unavailable.

    Use this for optional dependencies or vendor libraries that may not be
    installed or may fail to load their native driver on this system.

    Args:
        module_name: The module to import (e.g., "pynvml", "cpuinfo")
        package_name: Distribution name, used only in the debug message

    Returns:
        The imported module, or None if import fails

    Examples:
        >>> pynvml = safe_import("pynvml", "nvidia-ml-py")
        >>> if pynvml:
        ...     pynvml.nvmlInit()
    """
    try:
        return __import__(module_name, fromlist=[''])
    except ImportError:
        logger.debug(f"'{package_name or module_name}' not installed; related probes disabled")
        return None
    except Exception as e:
        # Native bindings may raise OSError and friends while loading
        logger.debug(f"Failed to import '{module_name}': {e}")
        return None

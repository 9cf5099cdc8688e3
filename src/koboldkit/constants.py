"""
Shared constants for koboldkit.

Release host locations, naming conventions for backend assets and the
defaults KoboldCpp itself uses when no networking flags are given.
"""

# ============================================================================
# PRODUCT
# ============================================================================

PRODUCT_NAME = "koboldkit"
CONFIG_FILE_NAME = "config.json"
LOG_FILE_NAME = "koboldkit.log"
INSTALL_METADATA_FILE = "koboldkit-install.json"

# ============================================================================
# RELEASE HOST
# ============================================================================

GITHUB_API_URL = "https://api.github.com"
KOBOLDCPP_REPOSITORY = "LostRuins/koboldcpp"
CATALOG_TIMEOUT_S = 15.0
DOWNLOAD_TIMEOUT_S = 30.0
DOWNLOAD_CHUNK_SIZE = 1024 * 256

# Mirror whose reported sizes are estimates rather than exact byte counts
ROCM_DOWNLOAD_URL = "https://koboldai.org/cpplinuxrocm"

# ============================================================================
# ASSET NAMING
# ============================================================================

ASSET_EXTENSIONS = (".tar.gz", ".zip", ".exe", ".dmg", ".appimage")

PLATFORM_TOKENS = {
    "win32": ("windows", "win", ".exe"),
    "darwin": ("macos", "mac", "darwin"),
    "linux": ("linux", "ubuntu"),
}

LAUNCHER_NAME = "koboldcpp-launcher"

# ============================================================================
# BACKEND RUNTIME
# ============================================================================

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 5001
SERVER_READY_SIGNAL = "Please connect to custom endpoint at"
TERMINATE_TIMEOUT_MS = 3000
UNPACK_TIMEOUT_S = 60
VERSION_PROBE_TIMEOUT_S = 30

DEFAULT_FRONTEND_PREFERENCE = "koboldcpp"

"""
Version comparison for loosely formatted release tags.

Release tags, folder suffixes and `--version` output all use slightly
different spellings ("v1.70.1", "1.70", "1.70.1.yr0-ROCm"). Everything here
normalizes to a sequence of integers and compares numerically, so "1.9"
sorts before "1.10" and "1.2" equals "1.2.0".
"""

import functools
import re
from typing import List, Optional

from .constants import ASSET_EXTENSIONS

_NON_NUMERIC = re.compile(r"[^0-9.]")
_FOLDER_VERSION = re.compile(r"-(\d+\.\d+(?:\.\d+)?(?:\.[a-zA-Z0-9]+)*(?:-[a-zA-Z0-9]+)*)$")
_VERSION_TOKEN = re.compile(r"^\d+\.\d+")


def _components(version: str) -> List[int]:
    cleaned = _NON_NUMERIC.sub("", re.sub(r"^v", "", version))
    parts = []
    for piece in cleaned.split("."):
        try:
            parts.append(int(piece))
        except ValueError:
            parts.append(0)
    return parts


def compare_versions(a: str, b: str) -> int:
    """
    Compare two version strings.

    A leading "v" is stripped, then every character that is not a digit or
    "." is dropped. Components are compared numerically up to the longer
    length; missing or empty components count as 0.

    Returns:
        Negative if a < b, zero if equal, positive if a > b

    Example:
        >>> compare_versions("v1.9.0", "v1.10.0") < 0
        True
        >>> compare_versions("1.2", "1.2.0")
        0
    """
    left = _components(a)
    right = _components(b)
    for i in range(max(len(left), len(right))):
        a_val = left[i] if i < len(left) else 0
        b_val = right[i] if i < len(right) else 0
        if a_val != b_val:
            return a_val - b_val
    return 0


version_key = functools.cmp_to_key(compare_versions)


def is_newer(candidate: str, current: str) -> bool:
    return compare_versions(candidate, current) > 0


def strip_asset_extensions(asset_name: str) -> str:
    """Drop a trailing archive/executable extension (.tar.gz, .zip, .exe, .dmg, .AppImage)."""
    lowered = asset_name.lower()
    for extension in ASSET_EXTENSIONS:
        if lowered.endswith(extension):
            return asset_name[: -len(extension)]
    return asset_name


def version_from_folder_name(folder_name: str) -> Optional[str]:
    """Return the trailing "-<version>" suffix of an install folder name, if any."""
    match = _FOLDER_VERSION.search(folder_name)
    return match.group(1) if match else None


def strip_version_suffix(folder_name: str) -> str:
    return _FOLDER_VERSION.sub("", folder_name)


def parse_version_output(output: str) -> Optional[str]:
    """
    Pick the version out of a backend's `--version` output.

    The first whitespace-separated token of the first line that starts with
    "<digits>.<digits>" is taken as the version.
    """
    for line in output.strip().splitlines():
        token = line.strip().split(maxsplit=1)
        if token and _VERSION_TOKEN.match(token[0]):
            return token[0]
    return None

"""
Version resolution for the adapter.
The resolver picks the desired version; the release index answers what
'latest' currently means.
"""

from .resolver import VersionResolver, normalize_version, resolve_version
from .releases import ReleaseIndex, parse_latest_stable_version

__all__ = ["VersionResolver", "normalize_version", "resolve_version", "ReleaseIndex", "parse_latest_stable_version"]

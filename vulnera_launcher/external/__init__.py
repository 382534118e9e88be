"""
This package manages the locally cached adapter install.
It exposes the `InstallManager`, which downloads, verifies and records the
adapter binary under an exclusively locked install directory.
"""

from .installer import InstallManager
from .download import ReleaseDownloader
from .lock import InstallLock
from .platform import PlatformInfo, get_platform_info

__all__ = ["InstallManager", "ReleaseDownloader", "InstallLock", "PlatformInfo", "get_platform_info"]

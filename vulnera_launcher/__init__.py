"""
Vulnera launcher.
Resolves, installs, locates and supervises the vulnera-adapter language server
on behalf of an editor, and keeps it in step with the editor's settings.
"""

from .session import LauncherSession
from .locator import BinaryLocator, BinaryOverride
from .external import InstallManager
from .version import VersionResolver
from .supervisor import ProcessSupervisor
from .reconciler import ConfigReconciler, HotApply, RequiresRestart, reconcile

__all__ = [
    "LauncherSession",
    "BinaryLocator",
    "BinaryOverride",
    "InstallManager",
    "VersionResolver",
    "ProcessSupervisor",
    "ConfigReconciler",
    "HotApply",
    "RequiresRestart",
    "reconcile",
]

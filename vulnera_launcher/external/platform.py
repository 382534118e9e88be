import platform
from dataclasses import dataclass
from typing import Optional
from vulnera_launcher import settings
from vulnera_launcher.exceptions import InstallFailure

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}

_TARGET_TRIPLES = {
    ("linux", "x86_64"): "x86_64-unknown-linux-gnu",
    ("linux", "aarch64"): "aarch64-unknown-linux-gnu",
    ("darwin", "x86_64"): "x86_64-apple-darwin",
    ("darwin", "aarch64"): "aarch64-apple-darwin",
    ("windows", "x86_64"): "x86_64-pc-windows-msvc",
}


@dataclass(frozen=True)
class PlatformInfo:
    target_triple: str
    is_windows: bool

    @property
    def asset_name(self) -> str:
        """File name of the release asset for this platform."""
        suffix = ".exe" if self.is_windows else ""
        return f"{settings.ADAPTER_NAME}-{self.target_triple}{suffix}"

    @property
    def binary_name(self) -> str:
        return f"{settings.ADAPTER_NAME}.exe" if self.is_windows else settings.ADAPTER_NAME


def get_platform_info(system: Optional[str] = None, machine: Optional[str] = None) -> PlatformInfo:
    """
    Maps the current OS and CPU architecture to release asset metadata.

    :param system: Override for platform.system(), lower-cased.
    :param machine: Override for platform.machine().
    :raises InstallFailure: For platforms without a published adapter build.
    """
    system = (system or platform.system()).lower()
    if system.startswith("win"):
        system = "windows"
    machine = (machine or platform.machine()).lower()
    arch = _ARCH_ALIASES.get(machine, machine)

    triple = _TARGET_TRIPLES.get((system, arch))
    if triple is None:
        raise InstallFailure(
            f"Unsupported platform ({system} / {machine}). Build {settings.ADAPTER_NAME} from source "
            f"and set {settings.OVERRIDE_PATH_ENV_VAR}."
        )
    return PlatformInfo(target_triple=triple, is_windows=system == "windows")

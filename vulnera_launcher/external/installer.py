import time
import shutil
import logging
import psutil
import tempfile
import threading
from pathlib import Path
from typing import Iterable, Optional, Set
from vulnera_launcher import settings
from vulnera_launcher.models import InstallState, VersionSpec
from vulnera_launcher.exceptions import InstallCancelled, InstallFailure, VersionMismatch
from vulnera_launcher.version.releases import ReleaseIndex
from vulnera_launcher.external.lock import InstallLock
from vulnera_launcher.external.download import ReleaseDownloader
from vulnera_launcher.external.platform import PlatformInfo, get_platform_info
from vulnera_launcher.external.manifest import read_install_state, state_from_manifest, write_manifest

log = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"


class InstallManager:
    """
    Keeps the managed adapter install in one cache directory in line with a VersionSpec.

    Layout of ``install_dir``::

        manifest.json               # written last, atomically
        .install.lock               # cross-process lock
        versions/<version>/vulnera-adapter[.exe]

    Every mutation happens while holding the directory lock. Downloads land in
    a staging directory first, so a failed or cancelled install leaves the
    previous manifest (and the install it points at) untouched.
    """

    def __init__(
        self,
        install_dir: Path = settings.INSTALL_DIR,
        downloader: Optional[ReleaseDownloader] = None,
        release_index: Optional[ReleaseIndex] = None,
        platform_info: Optional[PlatformInfo] = None,
        offline: bool = settings.OFFLINE,
        lock_timeout: float = settings.LOCK_TIMEOUT,
    ) -> None:
        self.install_dir = Path(install_dir)
        self.versions_dir = self.install_dir / "versions"
        self.offline = offline
        self.downloader = downloader or ReleaseDownloader()
        self.release_index = release_index or ReleaseIndex(offline=offline)
        self._platform_info = platform_info
        self.lock = InstallLock(self.install_dir / settings.LOCK_FILE_NAME, timeout=lock_timeout)

    @property
    def platform_info(self) -> PlatformInfo:
        if self._platform_info is None:
            self._platform_info = get_platform_info()
        return self._platform_info

    def read_state(self) -> InstallState:
        """Lock-free, read-only view of the current install."""
        return read_install_state(self.install_dir)

    @staticmethod
    def satisfies(state: InstallState, spec: VersionSpec, refresh: bool = False) -> bool:
        """
        Checks whether an existing install can be used as-is.

        :param state: The current install state.
        :param spec: The desired version.
        :param refresh: For 'latest', ignore whatever is installed and look for a newer release.
        """
        if not state.is_ready:
            return False
        if spec.is_exact:
            return state.installed_version == spec.value
        return not refresh

    def ensure_installed(
        self,
        spec: VersionSpec,
        refresh: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> InstallState:
        """
        BLOCKING: Ensures an install matching ``spec`` exists in the install directory.

        :param spec: The resolved version.
        :param refresh: For 'latest', check the release index even if something is installed.
        :param cancel_event: Aborts the lock wait or download when set.
        :raises InstallFailure: If the install could not be completed. The
            previous install, if any, remains in place.
        :raises VersionMismatch: If a different version is installed, ``spec`` is
            an exact pin, and installing the pin failed.
        :return: The verified install state.
        """
        try:
            self.install_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallFailure(f"Cannot create install directory '{self.install_dir}'", cause=e) from e

        with self.lock.hold(cancel_event):
            self._clear_staging()
            state = self.read_state()

            if self.satisfies(state, spec, refresh):
                log.info(f"{settings.ADAPTER_NAME} {state.installed_version} already installed ({state.executable})")
                state.verified_at = time.time()
                return state

            if self.offline:
                raise InstallFailure(
                    f"Offline mode: no usable {settings.ADAPTER_NAME} for '{spec.value}' in '{self.install_dir}'."
                )

            target = spec.value if spec.is_exact else self.release_index.latest_version(force_refresh=refresh)
            if not spec.is_exact and state.is_ready and state.installed_version == target:
                log.info(f"{settings.ADAPTER_NAME} {target} is already the latest release.")
                state.verified_at = time.time()
                return state

            if state.installed_version:
                log.warning(f"Installed adapter {state.installed_version} does not satisfy '{spec.value}'. Installing {target}...")
            else:
                log.info(f"Installing {settings.ADAPTER_NAME} {target} into '{self.install_dir}'...")
            try:
                return self._install(target, state, cancel_event)
            except InstallCancelled:
                raise
            except InstallFailure as e:
                if spec.is_exact and state.is_ready and state.installed_version != spec.value:
                    raise VersionMismatch(spec.value, state.installed_version, cause=e) from e
                raise

    def _install(self, version: str, previous: InstallState, cancel_event: Optional[threading.Event]) -> InstallState:
        """Downloads into staging, moves into versions/, then switches the manifest."""
        platform_info = self.platform_info
        staging_dir: Optional[Path] = None
        try:
            staging_dir = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=self.install_dir))
            self.downloader.download(version, platform_info, staging_dir / platform_info.binary_name, cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                raise InstallCancelled(f"Install of {settings.ADAPTER_NAME} {version} cancelled.")

            final_dir = self.versions_dir / version
            self.versions_dir.mkdir(exist_ok=True)
            if final_dir.exists():
                shutil.rmtree(final_dir)
            staging_dir.replace(final_dir)
            staging_dir = None

            now = time.time()
            manifest = {
                "name": settings.ADAPTER_NAME,
                "version": version,
                "executable": f"versions/{version}/{platform_info.binary_name}",
                "runtime": None,
                "target": platform_info.target_triple,
                "installed_at": now,
                "verified_at": now,
            }
            write_manifest(self.install_dir, manifest)
        except OSError as e:
            raise InstallFailure(f"Failed to write {settings.ADAPTER_NAME} {version} into '{self.install_dir}'", cause=e) from e
        finally:
            if staging_dir is not None:
                shutil.rmtree(staging_dir, ignore_errors=True)

        log.info(f"{settings.ADAPTER_NAME} {version} installed at '{final_dir}'.")
        self._prune_versions(keep=(version, previous.installed_version))
        return state_from_manifest(self.install_dir, manifest)

    def _clear_staging(self) -> None:
        """Removes staging directories left behind by an interrupted install."""
        for leftover in self.install_dir.glob(f"{STAGING_PREFIX}*"):
            log.warning(f"Removing leftover staging directory '{leftover}'.")
            shutil.rmtree(leftover, ignore_errors=True)

    def _versions_in_use(self) -> Set[str]:
        """Names of version directories whose executable is running in some process."""
        versions_dir = self.versions_dir.resolve()
        in_use = set()
        for proc in psutil.process_iter(["exe"]):
            exe = proc.info.get("exe")
            if not exe:
                continue
            try:
                relative = Path(exe).resolve().relative_to(versions_dir)
            except ValueError:
                continue
            if relative.parts:
                in_use.add(relative.parts[0])
        return in_use

    def _prune_versions(self, keep: Iterable[Optional[str]]) -> None:
        """
        Deletes version directories other than the current and previous install.
        Versions still running in another session are left for a later install to prune.
        """
        keep_names = {k for k in keep if k}
        if not self.versions_dir.is_dir():
            return
        candidates = [d for d in self.versions_dir.iterdir() if d.name not in keep_names]
        if not candidates:
            return
        in_use = self._versions_in_use()
        for version_dir in candidates:
            if version_dir.name in in_use:
                log.debug(f"Keeping old adapter install '{version_dir}'; it is still running.")
                continue
            log.debug(f"Pruning old adapter install '{version_dir}'.")
            shutil.rmtree(version_dir, ignore_errors=True)

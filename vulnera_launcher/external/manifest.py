import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from vulnera_launcher import settings
from vulnera_launcher.models import InstallState

log = logging.getLogger(__name__)


def manifest_path(install_dir: Path) -> Path:
    return Path(install_dir) / settings.MANIFEST_FILE_NAME


def read_manifest(install_dir: Path) -> Optional[Dict[str, Any]]:
    """
    Reads the install manifest without taking the lock.
    The manifest is only ever replaced atomically, so a reader sees either the
    previous or the new document.

    :return: The manifest dictionary, or None if missing or malformed.
    """
    path = manifest_path(install_dir)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, IOError) as e:
        log.warning(f"Ignoring unreadable install manifest '{path}': {e}")
        return None
    if not _is_well_formed(data):
        log.warning(f"Ignoring malformed install manifest '{path}'.")
        return None
    return data


def _is_well_formed(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    version = data.get("version")
    if not isinstance(version, str) or not version:
        return False
    if not isinstance(data.get("executable"), (str, type(None))):
        return False
    if not isinstance(data.get("verified_at"), (int, float, type(None))):
        return False
    return isinstance(data.get("runtime"), (str, type(None)))


def write_manifest(install_dir: Path, manifest: Dict[str, Any]) -> None:
    """
    Atomically replaces the install manifest. Callers must hold the install lock.

    :raises OSError: If the manifest could not be written.
    """
    path = manifest_path(install_dir)
    temp_path = path.with_suffix(".tmp")
    try:
        with temp_path.open("w") as f:
            json.dump(manifest, f, indent=4)
        temp_path.replace(path)
    finally:
        temp_path.unlink(missing_ok=True)


def state_from_manifest(install_dir: Path, manifest: Optional[Dict[str, Any]]) -> InstallState:
    """Converts a manifest dictionary into an InstallState."""
    install_dir = Path(install_dir)
    if not manifest:
        return InstallState(install_dir=install_dir)

    executable = manifest.get("executable")
    return InstallState(
        install_dir=install_dir,
        installed_version=manifest.get("version"),
        verified_at=manifest.get("verified_at"),
        executable=install_dir / executable if executable else None,
        runtime=manifest.get("runtime"),
    )


def read_install_state(install_dir: Path) -> InstallState:
    return state_from_manifest(install_dir, read_manifest(install_dir))

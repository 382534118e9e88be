import os
import shlex
import shutil
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple
from vulnera_launcher import settings
from vulnera_launcher.exceptions import BinaryNotFound
from vulnera_launcher.models import BinaryKind, BinaryResolution, InstallState

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BinaryOverride:
    """An explicit ``{path, arguments, env}`` launch document supplied by the host."""
    path: str
    arguments: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Any) -> Optional["BinaryOverride"]:
        """
        Parses the host's ``binary`` settings block.

        :param document: Mapping with 'path' and optional 'arguments' and 'env'.
        :return: The override, or None when no path is configured.
        :raises BinaryNotFound: If the document is present but malformed.
        """
        if not document:
            return None
        if not isinstance(document, Mapping):
            raise BinaryNotFound(f"Binary override must be a mapping, got {type(document).__name__}.")
        path = (document.get("path") or "").strip()
        if not path:
            return None
        arguments = document.get("arguments") or []
        env = document.get("env") or {}
        if not isinstance(arguments, (list, tuple)) or not isinstance(env, Mapping):
            raise BinaryNotFound("Binary override 'arguments' must be a list and 'env' a mapping.")
        return cls(path, tuple(str(a) for a in arguments), {str(k): str(v) for k, v in env.items()})

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> Optional["BinaryOverride"]:
        path = (env.get(settings.OVERRIDE_PATH_ENV_VAR) or "").strip()
        if not path:
            return None
        args = shlex.split(env.get(settings.OVERRIDE_ARGS_ENV_VAR) or "")
        return cls(path, tuple(args), {})


class BinaryLocator:
    """
    Decides what to launch. Precedence, highest first:

    1. An explicit override (host ``binary`` document, then VULNERA_ADAPTER_PATH), used verbatim.
    2. A ``vulnera-adapter`` executable on the system PATH.
    3. The managed install recorded in the install manifest.

    This class performs no network access and never installs anything.
    """

    def __init__(
        self,
        binary_name: str = settings.ADAPTER_NAME,
        stdio_argument: str = settings.STDIO_ARGUMENT,
        forwarded_env_keys: Tuple[str, ...] = settings.FORWARDED_ENV_KEYS,
    ) -> None:
        self.binary_name = binary_name
        self.stdio_argument = stdio_argument
        self.forwarded_env_keys = forwarded_env_keys

    def find_override(self, config: Optional[Mapping[str, Any]], env: Mapping[str, str]) -> Optional[BinaryOverride]:
        override = BinaryOverride.from_document((config or {}).get("binary"))
        return override or BinaryOverride.from_env(env)

    def find_on_path(self, env: Mapping[str, str]) -> Optional[str]:
        return shutil.which(self.binary_name, path=env.get("PATH"))

    def forwarded_env(self, env: Mapping[str, str]) -> Dict[str, str]:
        """Collects the API endpoint, key and log filter to hand to the adapter."""
        forwarded = {
            key: env[key]
            for key in self.forwarded_env_keys
            if (env.get(key) or "").strip()
        }
        forwarded.setdefault(settings.LOG_FILTER_ENV_VAR, settings.DEFAULT_LOG_FILTER)
        return forwarded

    def resolve(
        self,
        config: Optional[Mapping[str, Any]] = None,
        install_state: Optional[InstallState] = None,
        env: Optional[Mapping[str, str]] = None,
        allow_path: bool = True,
    ) -> BinaryResolution:
        """
        Computes the launch spec for the adapter.

        :param config: Host configuration; its 'binary' block is the override document.
        :param install_state: Result of the install step, if one ran.
        :param env: Environment used for PATH lookup and forwarded variables.
        :param allow_path: False to skip the PATH lookup, e.g. when a version is pinned.
        :raises BinaryNotFound: If no tier yields an executable.
        """
        env = os.environ if env is None else env

        override = self.find_override(config, env)
        if override is not None:
            log.info(f"Using adapter override: {override.path}")
            return BinaryResolution(BinaryKind.OVERRIDE, override.path, override.arguments, dict(override.env))

        forwarded = self.forwarded_env(env)

        if allow_path:
            on_path = self.find_on_path(env)
            if on_path:
                log.info(f"Using {self.binary_name} found on PATH: {on_path}")
                return BinaryResolution(BinaryKind.PATH_BINARY, on_path, (self.stdio_argument,), forwarded)

        if install_state is not None and install_state.is_ready:
            executable = str(install_state.executable)
            if install_state.runtime:
                runtime = shutil.which(install_state.runtime, path=env.get("PATH"))
                if not runtime:
                    raise BinaryNotFound(
                        f"Managed install requires runtime '{install_state.runtime}', which is not on PATH."
                    )
                arguments: Tuple[str, ...] = (executable, self.stdio_argument)
                executable = runtime
            else:
                arguments = (self.stdio_argument,)
            log.info(f"Using managed {self.binary_name} {install_state.installed_version}: {install_state.executable}")
            return BinaryResolution(BinaryKind.MANAGED_INSTALL, executable, arguments, forwarded)

        raise BinaryNotFound(
            f"No {self.binary_name} available: no override configured, none on PATH, and no managed install. "
            f"Set {settings.OVERRIDE_PATH_ENV_VAR} or allow the launcher to install it."
        )

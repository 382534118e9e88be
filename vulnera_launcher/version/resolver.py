import os
import re
import logging
from typing import Mapping, Optional
from vulnera_launcher import settings
from vulnera_launcher.models import VersionSource, VersionSpec

log = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(
    r"^v?(?P<core>\d+\.\d+\.\d+)(?P<pre>-[0-9A-Za-z.-]+)?(?P<build>\+[0-9A-Za-z.-]+)?$"
)


def normalize_version(raw: Optional[str]) -> Optional[str]:
    """
    Validates a version token and strips any leading 'v'.

    :param raw: The raw token, e.g. 'v1.2.3' or '0.2.0-rc1'.
    :return: The normalized version, or None if the token is not a valid version.
    """
    if raw is None:
        return None
    token = raw.strip()
    if not VERSION_PATTERN.match(token):
        return None
    return token[1:] if token.startswith("v") else token


class VersionResolver:
    """
    Determines which adapter version a session should run.

    Precedence, highest first:
    1. An explicit runtime pin (``VULNERA_ADAPTER_VERSION``).
    2. The build-time baked default.
    3. The literal ``latest``.
    An invalid value at one tier is reported and the next tier is used.
    """

    def __init__(self, pin_env_var: str = settings.PIN_ENV_VAR, baked_default: Optional[str] = None) -> None:
        self.pin_env_var = pin_env_var
        self.baked_default = settings.BAKED_ADAPTER_VERSION if baked_default is None else baked_default

    def resolve(self, env: Optional[Mapping[str, str]] = None) -> VersionSpec:
        env = os.environ if env is None else env

        pin = (env.get(self.pin_env_var) or "").strip()
        if pin:
            if pin.lower() == "latest":
                log.info(f"Adapter version pinned to 'latest' via {self.pin_env_var}.")
                return VersionSpec.latest()
            version = normalize_version(pin)
            if version:
                log.info(f"Adapter version from {self.pin_env_var}: {version}")
                return VersionSpec(VersionSource.PINNED, version)
            log.warning(f"Ignoring invalid {self.pin_env_var} value '{pin}'. Falling back.")

        baked = (self.baked_default or "").strip()
        if baked:
            version = normalize_version(baked)
            if version:
                log.debug(f"Adapter version from baked default: {version}")
                return VersionSpec(VersionSource.BAKED_DEFAULT, version)
            log.warning(f"Ignoring invalid baked adapter version '{baked}'. Falling back to latest.")

        return VersionSpec.latest()


def resolve_version(env: Optional[Mapping[str, str]] = None) -> VersionSpec:
    return VersionResolver().resolve(env)

"""
This module contains the configuration settings for the Vulnera launcher.
It defines cache paths, version resolution inputs, install and supervision
limits, and the environment variables forwarded to the adapter process.
"""

import os
import sys
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


def _default_cache_dir() -> pathlib.Path:
    if sys.platform == "win32":
        base = os.getenv("LOCALAPPDATA") or str(pathlib.Path.home() / "AppData" / "Local")
        return pathlib.Path(base) / "vulnera"
    if sys.platform == "darwin":
        return pathlib.Path.home() / "Library" / "Caches" / "vulnera"
    return pathlib.Path(os.getenv("XDG_CACHE_HOME") or pathlib.Path.home() / ".cache") / "vulnera"


#* --- Core Paths ---
CACHE_DIR = pathlib.Path(os.getenv("VULNERA_CACHE_DIR") or _default_cache_dir())
INSTALL_DIR = CACHE_DIR / "server"
LOGS_DIR = CACHE_DIR / "logs"
LOG_FILE_PATH = LOGS_DIR / "launcher.log"
VERSION_CACHE_PATH = CACHE_DIR / "cached-version.json"
MANIFEST_FILE_NAME = "manifest.json"
LOCK_FILE_NAME = ".install.lock"

#* --- Adapter Identity ---
ADAPTER_NAME = "vulnera-adapter"
STDIO_ARGUMENT = "--stdio"
PROCESS_TITLE = "Vulnera - Launcher"

#* --- Version Resolution ---
PIN_ENV_VAR = "VULNERA_ADAPTER_VERSION"
# Stamped by the release pipeline; empty means "no baked default".
BAKED_ADAPTER_VERSION = ""
MINIMUM_ADAPTER_VERSION = "0.1.1"
VERSION_CACHE_TTL_SECONDS = 24 * 60 * 60

#* --- Release Source ---
GITHUB_REPO = "vulnera-rs/adapter"
RELEASE_TAG_PREFIX = "adapter-v"
RELEASES_API_URL = f"https://api.github.com/repos/{GITHUB_REPO}/releases"
DOWNLOAD_URL_TEMPLATE = (
    f"https://github.com/{GITHUB_REPO}/releases/download/{RELEASE_TAG_PREFIX}{{version}}/{{asset}}"
)
USER_AGENT = "vulnera-launcher"
HTTP_TIMEOUT = 30  # seconds, per request
DOWNLOAD_CHUNK_SIZE = 64 * 1024

#* --- Install Settings ---
OFFLINE = _env_flag("VULNERA_OFFLINE")
INSTALL_PROXY = os.getenv("VULNERA_INSTALL_PROXY", "")
INSTALL_TIMEOUT = 300       # seconds, whole ensure_ready call
LOCK_TIMEOUT = 120          # seconds waiting for another installer
LOCK_POLL_INTERVAL = 0.2

#* --- Binary Override ---
OVERRIDE_PATH_ENV_VAR = "VULNERA_ADAPTER_PATH"
OVERRIDE_ARGS_ENV_VAR = "VULNERA_ADAPTER_ARGS"

#* --- Forwarded Environment ---
FORWARDED_ENV_KEYS = ("VULNERA_API_URL", "VULNERA_API_KEY", "VULNERA_LOG")
LOG_FILTER_ENV_VAR = "VULNERA_LOG"
DEFAULT_LOG_FILTER = "info"

#* --- Supervisor Settings ---
SPAWN_TIMEOUT = 15              # seconds
MAX_RESTART_ATTEMPTS = 1
GRACEFUL_SHUTDOWN_TIMEOUT = 5   # seconds before force-killing

#* --- Settings Reconciliation ---
# Runtime keys the adapter reads once at startup. Initialization options are
# always restart-required.
RESTART_REQUIRED_KEYS = {
    "binary",
    "apiUrl",
    "logLevel",
}
SETTINGS_DEBOUNCE_SECONDS = 0.5

#* --- Logging ---
LOG_FILE_MAX_BYTES = 2 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3
VERBOSE_LOGGING = _env_flag("VULNERA_LAUNCHER_VERBOSE")

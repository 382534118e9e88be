import logging
from pathlib import Path
from typing import List, Optional
from setproctitle import setproctitle
from vulnera_launcher import settings
from vulnera_launcher.relay import StdioRelay
from vulnera_launcher.session import LauncherSession
from vulnera_launcher.exceptions import LauncherError
from vulnera_launcher.models import SettingsSnapshot
from vulnera_launcher.watcher import SettingsFileWatcher, load_settings_file

log = logging.getLogger(__name__)


def _take_option(args: List[str], name: str) -> Optional[str]:
    """Removes ``name VALUE`` from args and returns VALUE."""
    if name not in args:
        return None
    index = args.index(name)
    if index + 1 >= len(args):
        raise ValueError(f"Option '{name}' needs a value.")
    value = args[index + 1]
    del args[index:index + 2]
    return value


#* --- Commands ---
def run_adapter(args: List[str]) -> int:
    """
    Runs the adapter behind this process's stdio until the editor disconnects.
    Nothing but protocol frames is written to stdout.
    """
    setproctitle(settings.PROCESS_TITLE)
    settings_file = _take_option(args, "--settings")
    settings_path = Path(settings_file) if settings_file else None

    try:
        snapshot = load_settings_file(settings_path, revision=0) if settings_path else SettingsSnapshot()
    except ValueError as e:
        log.critical(f"Cannot start: {e}")
        return 1

    session = LauncherSession(snapshot)
    relay = StdioRelay(session)
    watcher = SettingsFileWatcher(settings_path, relay.apply_settings) if settings_path else None
    try:
        try:
            handle = session.start()
        except LauncherError as e:
            log.critical(f"Could not start {settings.ADAPTER_NAME}: {e}")
            return 1
        if watcher:
            watcher.start()
        return relay.run(handle)
    finally:
        if watcher:
            watcher.stop()
        session.close()


def ensure_install(args: List[str]) -> int:
    """Installs (or verifies) the adapter without launching it."""
    refresh = "--refresh" in args
    with LauncherSession() as session:
        try:
            state = session.ensure_ready(refresh=refresh)
        except LauncherError as e:
            log.error(f"Install failed: {e}")
            return 1
        if state is None:
            print("No managed install needed (override or PATH binary in use).")
        else:
            print(f"{settings.ADAPTER_NAME} {state.installed_version} is installed at {state.executable}")
    return 0


def show_binary(args: List[str]) -> int:
    """Prints the command line that 'run' would launch, without installing anything."""
    with LauncherSession() as session:
        session.install_state = session.install_manager.read_state()
        try:
            resolution = session.resolve_binary()
        except LauncherError as e:
            log.error(str(e))
            return 1
        print(f"Source  : {resolution.kind.value}")
        print(f"Command : {' '.join(resolution.command)}")
        for key, value in sorted(resolution.env_overrides.items()):
            shown = "***" if key.endswith("_KEY") else value
            print(f"Env     : {key}={shown}")
    return 0


def show_version(args: List[str]) -> int:
    with LauncherSession() as session:
        spec = session.version_spec
        state = session.install_manager.read_state()
        print(f"Requested : {spec.value} ({spec.source.value})")
        print(f"Installed : {state.installed_version or 'none'}")
    return 0


def display_status(args: List[str]) -> int:
    """Shows the state of the managed install and who holds the install lock."""
    with LauncherSession() as session:
        status = session.status()
        owner = session.install_manager.lock.read_owner_pid()
    print("\n--- Vulnera Adapter Status ---")
    for key, value in status.items():
        print(f"  {key:<18} : {value if value is not None else '-'}")
    print(f"  {'lock_owner_pid':<18} : {owner or '-'}")
    print()
    return 0


def print_help(args: Optional[List[str]] = None) -> int:
    """Prints the main help text for the console."""
    print("\nUsage: vulnera-launcher <command> [options] [--verbose]")
    print("\nAvailable commands:")
    print("  run [--settings FILE]  - Install if needed, then serve the adapter over stdio.")
    print("  ensure [--refresh]     - Install or verify the adapter without starting it.")
    print("  which                  - Show the command line that 'run' would launch.")
    print("  version                - Show the requested and installed adapter versions.")
    print("  status                 - Show the install directory and lock state.")
    print("  help                   - Show this help message.")
    print()
    return 0


def execute_command(command: str, args: List[str]) -> int:
    """
    Executes a single command.

    :param command: The main command string (e.g., 'run', 'ensure').
    :param args: A list of arguments for the command.
    :return int: The process exit code.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "run": run_adapter,
        "ensure": ensure_install,
        "which": show_binary,
        "version": show_version,
        "status": display_status,
        "help": print_help,
    }

    if command not in command_map:
        log.error(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return 2
    try:
        return command_map[command](args)
    except ValueError as e:
        log.error(str(e))
        return 2

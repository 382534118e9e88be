import sys
import logging
from vulnera_launcher import console, settings
from vulnera_launcher.log import setup_logging

log = logging.getLogger("console")


def main() -> None:
    """The main entry point for the launcher."""
    args = sys.argv[1:]
    verbose = settings.VERBOSE_LOGGING
    if "--verbose" in args:
        verbose = True
        args.remove("--verbose")

    setup_logging(logging.DEBUG if verbose else logging.INFO)

    command = args[0].lower() if args else "help"
    try:
        exit_code = console.execute_command(command, args[1:])
    except KeyboardInterrupt:
        log.warning("Interrupted.")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

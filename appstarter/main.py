import sys
import json
import signal
import logging
import threading
import setproctitle
from pathlib import Path
from typing import List, Optional

from appstarter.config import effective_settings as config
from appstarter.host import CommandHost
from appstarter.log import setup_logging
from appstarter.models import CommandConfig
from appstarter.scheduler import CronParseError, CronSchedule

log = logging.getLogger("console")

PROCESS_TITLE = "AppStarter - Host"

# Set by main() once logging is configured.
_log_store = None

USAGE = """Usage: appstarter <command> [args] [--verbose]

Commands:
  run [commands.json]      Run the host until interrupted
  next [commands.json]     Show the next run time of every scheduled command
  check-cron "<expr>"      Validate a five-field cron expression
  help                     Show this message
"""


def load_commands(path: Path) -> List[CommandConfig]:
    """
    Reads command definitions from a JSON file.

    The file holds either a list of commands or an object with a "commands" list.

    :param path: The JSON file to read.
    :return: The parsed commands, or an empty list if the file is missing or invalid.
    """
    if not path.exists():
        log.warning(f"Commands file '{path}' not found.")
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, IOError) as e:
        log.error(f"Failed to load or parse commands file '{path}': {e}")
        return []

    entries = data.get("commands", []) if isinstance(data, dict) else data
    commands = []
    for entry in entries:
        try:
            commands.append(CommandConfig.from_dict(entry))
        except (TypeError, ValueError, KeyError) as e:
            log.error(f"Skipping invalid command definition {entry!r}: {e}")
    return commands


def run_host(commands_file: Path) -> int:
    """Runs the host in the foreground until SIGINT/SIGTERM."""
    setproctitle.setproctitle(PROCESS_TITLE)
    host = CommandHost(log_store=_log_store)
    host.add_commands(load_commands(commands_file))

    stop_requested = threading.Event()

    def _request_stop(signum, _frame):
        log.info(f"Received signal {signum}, shutting down...")
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    log.info("=" * 20 + " AppStarter Host Starting " + "=" * 20)
    host.start_app()
    try:
        while not stop_requested.wait(1):
            pass
    finally:
        host.shutdown()
    return 0


def show_next_runs(commands_file: Path) -> int:
    host = CommandHost(log_store=_log_store)
    host.add_commands(load_commands(commands_file))
    next_runs = host.next_run_times()
    if not next_runs:
        print("No scheduled commands.")
    for command_id, next_run in next_runs.items():
        command = host.get_command(command_id)
        when = next_run.strftime("%Y-%m-%d %H:%M") if next_run else "never (within a year)"
        print(f"{command.name:<30} {command.cron_expression:<20} {when}")
    host.shutdown()
    return 0


def check_cron(expression: str) -> int:
    try:
        schedule = CronSchedule.parse(expression)
    except CronParseError as e:
        print(f"Invalid: {e}")
        return 1
    print(f"Valid: {schedule.expression}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the console application."""
    global _log_store
    args = list(sys.argv[1:] if argv is None else argv)

    verbose = config.VERBOSE_LOGGING
    if "--verbose" in args:
        verbose = True
        args.remove("--verbose")
    _log_store = setup_logging(logging.DEBUG if verbose else logging.INFO)

    if not args or args[0].lower() in ("help", "-h", "--help"):
        print(USAGE)
        return 0

    command, rest = args[0].lower(), args[1:]
    commands_file = Path(rest[0]) if rest else config.COMMANDS_FILE

    if command == "run":
        return run_host(commands_file)
    if command == "next":
        return show_next_runs(commands_file)
    if command == "check-cron":
        if not rest:
            print('Usage: appstarter check-cron "<minute> <hour> <day> <month> <weekday>"')
            return 2
        return check_cron(" ".join(rest))

    log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return 2


if __name__ == "__main__":
    sys.exit(main())

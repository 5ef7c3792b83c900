import sys
import time
import logging
from pathlib import Path
from typing import List, Optional

import setproctitle

from queuevisor.local.config import effective_settings as config
from queuevisor.local.configuration import ConfigurationError, QueueConfiguration
from queuevisor.local.database import ProcessDBManager
from queuevisor.local.supervisor import InvalidModeError, Mode, Supervisor
from queuevisor.local.supervisor import persistence, process_utils
from queuevisor.log.setup import setup_logging

log = logging.getLogger("queuevisor")

HELP_TEXT = """
Usage: queuevisor <command> [options]

Commands:
  start [--mode MODE] [--config PATH] [--verbose]
                        Start the supervisor in the foreground. MODE is one of
                        schedule, work or all (default from QUEUEVISOR_MODE).
  status                Show the running supervisor and the process registry.
  prune                 Delete stale process records once.
  config show           Display all modifiable settings.
  config set KEY VALUE  Change a modifiable setting (applies on next start).
  help                  Show this help message.
"""


def _pop_option(args: List[str], name: str) -> Optional[str]:
    """Removes `name VALUE` (or `name=VALUE`) from args and returns VALUE."""
    for index, arg in enumerate(args):
        if arg == name:
            if index + 1 >= len(args):
                raise ValueError(f"Option '{name}' requires a value.")
            value = args[index + 1]
            del args[index:index + 2]
            return value
        if arg.startswith(f"{name}="):
            del args[index]
            return arg.split("=", 1)[1]
    return None


def start_command(args: List[str]) -> int:
    verbose = "--verbose" in args
    if verbose:
        args.remove("--verbose")
    console_level = logging.DEBUG if verbose or config.VERBOSE_LOGGING else logging.INFO

    try:
        mode = Mode.parse(_pop_option(args, "--mode") or config.DEFAULT_MODE)
        config_path = _pop_option(args, "--config")
        configuration = QueueConfiguration(load_from=Path(config_path) if config_path else None)
        # Surface option errors before anything is spawned.
        Supervisor.runners_for(mode, configuration)
    except (InvalidModeError, ConfigurationError, ValueError) as e:
        log.error(str(e))
        return 2

    if persistence.check_if_already_running():
        return 1

    setup_logging(console_level)
    setproctitle.setproctitle(f"{config.PROCESS_TITLE_PREFIX} - Supervisor")
    log.info("=" * 20 + f" Supervisor starting in '{mode.value}' mode " + "=" * 20)
    Supervisor.start(mode, configuration, console_level=console_level)
    return 0


def status_command(args: List[str]) -> int:
    pid_info = persistence.get_pid_info()
    supervisor_pid = pid_info.get("supervisor") if pid_info else None
    if supervisor_pid and process_utils.pid_exists(supervisor_pid):
        print(f"Supervisor is running (PID: {supervisor_pid}).")
        for name, pid in pid_info.items():
            if name == "supervisor":
                continue
            print(f"  {name:<30} PID {pid:<8} {process_utils.get_proc_status_string(pid)}")
    else:
        print("Supervisor is stopped.")

    registry = ProcessDBManager(config.PROCESS_DB_PATH)
    registry.initialize_database()
    records = registry.fetch_processes()
    print(f"\nProcess registry ({len(records)} record(s), alive threshold {config.PROCESS_ALIVE_THRESHOLD}s):")
    now = time.time()
    for record in records:
        age = now - record.last_heartbeat_at
        stale = " STALE" if age >= config.PROCESS_ALIVE_THRESHOLD else ""
        print(
            f"  #{record.id:<5} {record.kind:<12} PID {record.pid:<8} host {record.hostname} "
            f"heartbeat {age:.0f}s ago ({process_utils.get_proc_status_string(record.pid)}){stale}"
        )
    return 0


def prune_command(args: List[str]) -> int:
    registry = ProcessDBManager(config.PROCESS_DB_PATH)
    registry.initialize_database()
    pruned = registry.prune(config.PROCESS_ALIVE_THRESHOLD)
    print(f"Pruned {pruned} stale process record(s).")
    return 0


def config_command(args: List[str]) -> int:
    sub_command = args[0].lower() if args else "show"
    if sub_command == "show":
        print("\n--- Modifiable Settings ---")
        for key, value in config.modifiable_settings().items():
            print(f"  {key} = {value}")
        print("---------------------------\n")
        return 0
    if sub_command == "set" and len(args) >= 3:
        success, message = config.update_setting(args[1].upper(), " ".join(args[2:]))
        print(message)
        return 0 if success else 1
    print("Usage: config show | config set KEY VALUE")
    return 1


def help_command(args: List[str]) -> int:
    print(HELP_TEXT)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """The command line entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        return help_command([])

    command, args = argv[0].lower(), argv[1:]
    command_map = {
        "start": start_command,
        "status": status_command,
        "prune": prune_command,
        "config": config_command,
        "help": help_command,
    }
    if command not in command_map:
        print(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return 1

    try:
        return command_map[command](args)
    except KeyboardInterrupt:
        log.warning("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())

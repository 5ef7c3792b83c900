import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from queuevisor.local.config import effective_settings as config
from queuevisor.local.supervisor import process_utils

if TYPE_CHECKING:
    from .supervisor import Supervisor

log = logging.getLogger(__name__)


def _pid_file_path() -> Path:
    return Path(config.PID_FILE_PATH)


def get_pid_info() -> Optional[Dict[str, int]]:
    """
    Reads the PID file from disk and returns its contents.

    :return: A dictionary of PIDs if the file exists and is valid, else None.
    """
    pid_file = _pid_file_path()
    if not pid_file.exists():
        return None
    try:
        with pid_file.open("r") as f:
            pids = json.load(f)
        if not isinstance(pids, dict):
            pid_file.unlink()
            return None
        return pids
    except (json.JSONDecodeError, IOError):
        pid_file.unlink(missing_ok=True)
        return None


def write_pid_file(supervisor: "Supervisor") -> None:
    """
    Atomically writes the supervisor's and its runners' PIDs to the PID file.

    :param supervisor: The running Supervisor instance.
    """
    pid_dict = {"supervisor": supervisor.pid}
    pid_dict.update({runner.name: runner.pid for runner in supervisor.runners if runner.pid})

    pid_file = _pid_file_path()
    temp_pid_path = pid_file.with_suffix(".tmp")
    try:
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        with temp_pid_path.open("w") as f:
            json.dump(pid_dict, f, indent=4)
        temp_pid_path.replace(pid_file)
    except (IOError, OSError) as e:
        log.error(f"Failed to write PID file: {e}", exc_info=True)
    finally:
        temp_pid_path.unlink(missing_ok=True)


def remove_pid_file(supervisor: "Supervisor") -> None:
    """Removes the PID file if it still belongs to this supervisor."""
    pid_info = get_pid_info()
    if pid_info and pid_info.get("supervisor") == supervisor.pid:
        _pid_file_path().unlink(missing_ok=True)
        log.debug("Removed PID file.")


def check_if_already_running() -> bool:
    """
    Checks if a supervisor is already running based on the PID file.

    :return: True if the recorded supervisor process is alive.
    """
    pid_info = get_pid_info()
    supervisor_pid = pid_info.get("supervisor") if pid_info else None
    if supervisor_pid and process_utils.pid_exists(supervisor_pid):
        log.error(f"A supervisor appears to be running already (PID: {supervisor_pid}).")
        return True
    return False

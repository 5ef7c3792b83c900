import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from queuevisor.local.config import effective_settings as config

log = logging.getLogger(__name__)

DEFAULT_OPTIONS: Dict[str, Any] = {
    "scheduler": {},
    "queues": {"default": {}},
}


class ConfigurationError(ValueError):
    """Raised when the queue configuration cannot be loaded or is invalid."""


class QueueConfiguration:
    """
    Enumerates the runners the supervisor should start.

    The options come from, in order of precedence: the `options` argument,
    the YAML file at `load_from`, the YAML file at `QUEUE_CONFIG_PATH` when it
    exists, and finally a single `default` queue. The file looks like::

        scheduler:
          polling_interval: 300
        queues:
          default:
            polling_interval: 1
          mail:
            threads: 2
    """

    def __init__(self, options: Optional[Dict[str, Any]] = None, load_from: Optional[Path] = None) -> None:
        if options is None:
            options = self._load(load_from)
        self.raw_options = options

    @property
    def scheduler_options(self) -> Dict[str, Any]:
        """Keyword arguments for the single scheduler runner."""
        section = self.raw_options.get("scheduler") or {}
        self._validate(section, config.SCHEDULER_DEFAULTS, "scheduler")
        return {**config.SCHEDULER_DEFAULTS, **section}

    @property
    def queues(self) -> Dict[str, Dict[str, Any]]:
        """Keyword arguments for each dispatcher, keyed by queue name, in file order."""
        queues = self.raw_options.get("queues")
        if queues is None:
            queues = DEFAULT_OPTIONS["queues"]
        if not isinstance(queues, dict):
            raise ConfigurationError(f"'queues' must be a mapping of queue names to options, got {type(queues).__name__}")

        result = {}
        for queue_name, queue_options in queues.items():
            queue_options = queue_options or {}
            self._validate(queue_options, config.DISPATCHER_DEFAULTS, f"queue '{queue_name}'")
            result[str(queue_name)] = {**config.DISPATCHER_DEFAULTS, **queue_options, "queue_name": str(queue_name)}
        return result

    @staticmethod
    def _validate(section: Any, defaults: Dict[str, Any], label: str) -> None:
        if not isinstance(section, dict):
            raise ConfigurationError(f"Options for {label} must be a mapping, got {type(section).__name__}")
        unknown = set(section) - set(defaults)
        if unknown:
            raise ConfigurationError(f"Unknown option(s) for {label}: {', '.join(sorted(map(str, unknown)))}")

    @staticmethod
    def _load(load_from: Optional[Path]) -> Dict[str, Any]:
        path = Path(load_from) if load_from else Path(config.QUEUE_CONFIG_PATH)
        if not path.exists():
            if load_from:
                raise ConfigurationError(f"Queue configuration file '{path}' does not exist.")
            log.debug(f"No queue configuration at '{path}'. Using defaults.")
            return dict(DEFAULT_OPTIONS)

        try:
            with path.open("r", encoding="utf-8") as f:
                options = yaml.safe_load(f) or {}
        except (yaml.YAMLError, IOError) as e:
            raise ConfigurationError(f"Failed to load queue configuration '{path}': {e}") from e

        if not isinstance(options, dict):
            raise ConfigurationError(f"Queue configuration '{path}' must contain a mapping at the top level.")
        log.info(f"Loaded queue configuration from '{path}'.")
        return options

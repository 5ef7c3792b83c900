import logging
from typing import Any, Dict

from queuevisor.local.runner.base import Runner

log = logging.getLogger(__name__)


class Scheduler(Runner):
    """
    The runner role that periodically emits work that has become due.

    Deciding what is due is left to the host application, which overrides
    `poll()`; the supervisor only needs the process lifecycle.
    """

    kind = "Scheduler"

    def __init__(self, polling_interval: float = 300, batch_size: int = 500, **kwargs: Any) -> None:
        super().__init__(polling_interval=polling_interval, batch_size=batch_size, **kwargs)

    @property
    def metadata(self) -> Dict[str, Any]:
        return {**super().metadata, "role": "scheduler"}

    def poll(self) -> int:
        log.debug(f"{self.name} checking for due work (batch size {self.batch_size}).")
        return 0

import logging
from typing import Any, Dict

from queuevisor.local.runner.base import Runner

log = logging.getLogger(__name__)


class Dispatcher(Runner):
    """
    The runner role that claims and executes work items from one queue.

    Claiming and executing items is done by the host application in an
    overridden `poll()`.
    """

    kind = "Dispatcher"

    def __init__(
        self,
        queue_name: str = "default",
        polling_interval: float = 1,
        batch_size: int = 500,
        threads: int = 5,
        **kwargs: Any,
    ) -> None:
        super().__init__(polling_interval=polling_interval, batch_size=batch_size, **kwargs)
        self.queue_name = queue_name
        self.threads = threads

    @property
    def name(self) -> str:
        return f"{self.kind}({self.queue_name})"

    @property
    def metadata(self) -> Dict[str, Any]:
        return {**super().metadata, "queue_name": self.queue_name, "threads": self.threads}

    def poll(self) -> int:
        log.debug(f"{self.name} polling for up to {self.batch_size} item(s).")
        return 0

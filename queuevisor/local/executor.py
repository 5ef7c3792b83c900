import logging
from contextlib import ExitStack, contextmanager
from typing import Callable, ContextManager, Generator, List, Optional

log = logging.getLogger(__name__)

ScopeFactory = Callable[[], ContextManager]


def _log_error(error: Exception) -> None:
    log.error(f"Error in wrapped execution: {error}", exc_info=error)


class AppExecutor:
    """
    Brackets a unit of background work with the host application's
    setup/teardown scopes.

    Each registered scope factory returns a context manager; `wrap()` enters
    them in registration order and always exits them in reverse order, also
    when the wrapped body raises. Nothing is kept between two `wrap()` calls.
    """

    def __init__(self, *scopes: ScopeFactory, on_error: Optional[Callable[[Exception], None]] = None):
        self.scopes: List[ScopeFactory] = list(scopes)
        self.on_error = on_error or _log_error

    def register(self, scope: ScopeFactory) -> None:
        self.scopes.append(scope)

    @contextmanager
    def wrap(self) -> Generator[None, None, None]:
        with ExitStack() as stack:
            for scope in self.scopes:
                stack.enter_context(scope())
            try:
                yield
            except Exception as e:
                self.on_error(e)
                raise

"""LIFO teardown registry."""

import logging
from typing import Callable, List, Tuple

from .errors import CleanupError

logger = logging.getLogger("localvolume-e2e.cleanup")

CleanupFn = Callable[[], None]


class CleanupRegistry:
    """Named teardown actions, run newest first, exactly once.

    Usage:
        cleanup = CleanupRegistry()
        cleanup.register("delete-disks", provisioner.cleanup)
        try:
            ...
        finally:
            cleanup.run_all()

    Actions must be idempotent: the scenario may already have removed what
    they tear down.
    """

    def __init__(self):
        self._actions: List[Tuple[str, CleanupFn]] = []
        self._drained = False

    def register(self, name: str, action: CleanupFn) -> None:
        if self._drained:
            raise RuntimeError(f"cannot register {name!r}: cleanup already ran")
        self._actions.append((name, action))

    def __len__(self):
        return len(self._actions)

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self._actions]

    def run_all(self) -> None:
        """Run every action in reverse registration order.

        A failing action is logged and does not stop the rest.

        Raises:
            CleanupError: If any action failed, after all have run
        """
        if self._drained:
            logger.debug("Cleanup already ran, skipping")
            return
        self._drained = True

        failures: List[Tuple[str, BaseException]] = []
        for name, action in reversed(self._actions):
            logger.info(f"Running cleanup {name}")
            try:
                action()
            except Exception as e:
                logger.error(f"Cleanup {name} failed: {e}")
                failures.append((name, e))

        if failures:
            raise CleanupError(failures)

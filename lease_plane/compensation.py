"""
Lease Plane Compensation Stack
==============================

Undo actions for a multi-step operation, pushed as each step commits
and run newest-first if a later step fails.
"""

import logging
from typing import Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)


class CompensationStack:

    def __init__(self, operation: str):
        self.operation = operation
        self._actions: List[Tuple[str, Callable[[], Awaitable[None]]]] = []

    def push(self, description: str, action: Callable[[], Awaitable[None]]) -> None:
        self._actions.append((description, action))

    def discard(self) -> None:
        """Forget all actions once the operation has succeeded."""
        self._actions.clear()

    async def unwind(self) -> List[Tuple[str, Exception]]:
        """
        Run every action in reverse order.

        A failing action is logged and does not stop the rest.

        Returns:
            (description, exception) for each action that failed
        """
        failures: List[Tuple[str, Exception]] = []
        while self._actions:
            description, action = self._actions.pop()
            try:
                await action()
                logger.info(f"{self.operation}: compensated '{description}'")
            except Exception as e:
                logger.exception(f"{self.operation}: compensation '{description}' failed: {e}")
                failures.append((description, e))
        return failures

    def __len__(self) -> int:
        return len(self._actions)

"""Ordered, non-transactional multi-step operations.

Provisioning a tenant touches several independent Vault objects (policy,
token role, mounts, durable record) with no cross-object transaction.  A
:class:`Saga` runs such steps in order and stops at the first failure.
Nothing is rolled back: every step is idempotent, so re-running the whole
saga after a partial failure converges on the desired end state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from vault_broker.errors import BrokerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Step:
    """One named, idempotent action."""

    description: str
    action: Callable[[], Awaitable[object]]


class SagaStepError(BrokerError):
    """Raised when a saga step fails; ``completed`` lists the steps already applied."""

    def __init__(self, step: str, cause: Exception, completed: list[str]) -> None:
        super().__init__(f"failed to {step}: {cause}")
        self.step = step
        self.completed = completed


class Saga:
    """Run :class:`Step` objects in order, aborting on the first failure."""

    def __init__(self, name: str, steps: list[Step]) -> None:
        self.name = name
        self.steps = list(steps)

    async def run(self) -> list[str]:
        """Apply every step; return their descriptions in execution order.

        Raises
        ------
        SagaStepError
            Wrapping the first step failure.  Steps before it stay applied.
        """
        completed: list[str] = []
        for step in self.steps:
            logger.debug("%s: %s", self.name, step.description)
            try:
                await step.action()
            except BrokerError:
                raise
            except Exception as exc:
                error = SagaStepError(step.description, exc, list(completed))
                logger.error("%s aborted after %d step(s): %s", self.name, len(completed), error)
                raise error from exc
            completed.append(step.description)
        return completed

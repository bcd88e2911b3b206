"""
Forward-and-compensate flows over stores that cannot share a transaction.

A flow is a list of ``SagaStep`` values. ``Saga.run`` executes the actions in
order; when one fails, the compensations of the steps that already succeeded
run in reverse order, each receiving the result of its own action.

Outcomes:
- every step succeeded: ``SagaState.COMMITTED`` and the list of results;
- a step failed and all compensations succeeded: ``SagaState.COMPENSATED``
  and the original error is raised again;
- a compensation failed too: ``SagaState.PARTIALLY_COMPENSATED`` and an
  ``InconsistencyError``. The ids left behind are logged, not returned.

Compensations are shielded from cancellation of the calling task; if the
caller goes away mid-rollback the rollback keeps running in the background
and logs its own outcome.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from clusterdeck.core.errors import AppException, InconsistencyError, UpstreamError

logger = structlog.get_logger(__name__)

Action = Callable[[], Awaitable[Any]]
Compensation = Callable[[Any], Awaitable[Any]]

# rollbacks detached from a cancelled caller; held so they are not collected
_detached: set[asyncio.Task[Any]] = set()


class SagaState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMMITTED = "committed"
    COMPENSATED = "compensated"
    PARTIALLY_COMPENSATED = "partially_compensated"


@dataclass
class SagaStep:
    name: str
    action: Action
    compensate: Optional[Compensation] = None
    # ids touched by this step, logged with every compensation outcome
    ids: tuple[str, ...] = ()


@dataclass
class Saga:
    flow: str
    resource: Optional[str] = None
    steps: list[SagaStep] = field(default_factory=list)
    state: SagaState = SagaState.PENDING
    failed_step: Optional[str] = None

    def add(
        self,
        name: str,
        action: Action,
        compensate: Optional[Compensation] = None,
        *,
        ids: tuple[str, ...] = (),
    ) -> "Saga":
        self.steps.append(SagaStep(name=name, action=action, compensate=compensate, ids=ids))
        return self

    async def run(self) -> list[Any]:
        self.state = SagaState.RUNNING
        completed: list[tuple[SagaStep, Any]] = []
        for step in self.steps:
            try:
                result = await step.action()
            except (Exception, asyncio.CancelledError) as exc:
                self.failed_step = step.name
                logger.warning(
                    "saga.step_failed",
                    flow=self.flow,
                    resource=self.resource,
                    step=step.name,
                    ids=list(step.ids),
                    error=str(exc) or exc.__class__.__name__,
                )
                orphaned = await self._rollback(completed)
                if orphaned:
                    self.state = SagaState.PARTIALLY_COMPENSATED
                    raise InconsistencyError(self.flow, orphaned) from exc
                self.state = SagaState.COMPENSATED
                if isinstance(exc, (AppException, asyncio.CancelledError)):
                    raise exc
                raise UpstreamError(
                    f"{self.flow} failed while running '{step.name}'",
                    details={"step": step.name, **({"resource": self.resource} if self.resource else {})},
                ) from exc
            completed.append((step, result))

        self.state = SagaState.COMMITTED
        logger.info("saga.committed", flow=self.flow, resource=self.resource, steps=len(completed))
        return [result for _, result in completed]

    async def _rollback(self, completed: list[tuple[SagaStep, Any]]) -> list[str]:
        task = asyncio.ensure_future(self._compensate(completed))
        try:
            orphaned = await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                _detached.add(task)
                task.add_done_callback(_detached.discard)
                logger.warning("saga.rollback_detached", flow=self.flow, resource=self.resource)
            raise
        return orphaned

    async def _compensate(self, completed: list[tuple[SagaStep, Any]]) -> list[str]:
        orphaned: list[str] = []
        for step, result in reversed(completed):
            if step.compensate is None:
                continue
            log = logger.bind(flow=self.flow, resource=self.resource, step=step.name, ids=list(step.ids))
            log.info("saga.compensation_started")
            try:
                await step.compensate(result)
            except Exception as exc:
                log.error("saga.compensation_failed", error=str(exc) or exc.__class__.__name__)
                orphaned.extend(step.ids or (step.name,))
            else:
                log.info("saga.compensation_succeeded")

        if orphaned:
            self.state = SagaState.PARTIALLY_COMPENSATED
            logger.error(
                "saga.manual_intervention_required",
                flow=self.flow,
                resource=self.resource,
                orphaned_ids=orphaned,
            )
        return orphaned

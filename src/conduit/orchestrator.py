"""Plan execution: run an ``ExecutionPlan`` against provider adapters."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING, Any, Literal, Protocol

from conduit.errors import GatewayError, PlanningError
from conduit.plan import HUMAN_REVIEW_MODEL, total_cost_tier
from conduit.types import ChatMessage, UnifiedRequest

if TYPE_CHECKING:
    from conduit.plan import ExecutionPlan, PlanTask
    from conduit.routing import RoutingDecision
    from conduit.types import CostTier, Strategy, UnifiedResponse

logger = logging.getLogger(__name__)

SubTaskStatus = Literal["pending", "running", "complete", "error"]

_SYNTHESIS_PROMPT = (
    "You combine the outputs of several sub-tasks into one coherent, complete "
    "answer to the original task. Resolve overlaps and keep every useful detail."
)


class Dispatcher(Protocol):
    """The single-call paths the orchestrator drives."""

    async def route(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse: ...

    async def route_with_fallback(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse: ...


@dataclass
class SubTask:
    """Runtime state of one plan task.

    Moves ``pending -> running -> complete|error`` exactly once.
    """

    id: int
    task: str
    model: str
    provider: str
    status: SubTaskStatus = "pending"
    result: str | None = None
    error: str | None = None
    cost: float = 0.0

    @classmethod
    def from_plan_task(cls, task: PlanTask) -> SubTask:
        return cls(id=task.id, task=task.task, model=task.model, provider=task.provider)

    def start(self) -> None:
        if self.status != "pending":
            raise PlanningError(f"Sub-task {self.id} cannot start from {self.status}")
        self.status = "running"

    def complete(self, result: str, *, cost: float = 0.0) -> None:
        if self.status != "running":
            raise PlanningError(f"Sub-task {self.id} cannot complete from {self.status}")
        self.status = "complete"
        self.result = result
        self.cost = cost

    def fail(self, error: str) -> None:
        if self.status != "running":
            raise PlanningError(f"Sub-task {self.id} cannot fail from {self.status}")
        self.status = "error"
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "task": self.task,
            "model": self.model,
            "provider": self.provider,
            "status": self.status,
        }
        if self.result is not None:
            out["result"] = self.result
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class OrchestratorResponse:
    """Outcome of executing a plan."""

    strategy: Strategy
    sub_tasks: tuple[SubTask, ...]
    result: str
    total_cost: CostTier
    execution_time_ms: float
    decision: RoutingDecision
    plan_id: str
    total_cost_usd: float = 0.0

    @property
    def completed(self) -> int:
        return sum(1 for s in self.sub_tasks if s.status == "complete")

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "subTasks": [s.to_dict() for s in self.sub_tasks],
            "result": self.result,
            "totalCost": self.total_cost,
            "totalCostUsd": self.total_cost_usd,
            "executionTime": self.execution_time_ms,
            "decision": self.decision.to_dict(),
            "planId": self.plan_id,
        }


def completeness_line(completed: int, total: int) -> str:
    failed = total - completed
    if failed:
        return (
            f"Completed {completed}/{total} subtasks. {failed} tasks failed "
            "but proceeding with available results."
        )
    return (
        f"Completed {completed}/{total} subtasks. "
        "All components integrated and delivered."
    )


def merge_results(sub_tasks: tuple[SubTask, ...]) -> str:
    """Join completed results in id order."""
    done = sorted((s for s in sub_tasks if s.status == "complete"), key=lambda s: s.id)
    return "\n\n".join(f"## [{s.id}] {s.task}\n{s.result}" for s in done)


def select_best(sub_tasks: tuple[SubTask, ...]) -> str:
    """Pick the longest completed result; ties go to the lowest id."""
    done = [s for s in sub_tasks if s.status == "complete"]
    if not done:
        return ""
    best = min(done, key=lambda s: (-len(s.result or ""), s.id))
    return f"## [{best.id}] {best.task}\n{best.result}"


def _user_request(
    text: str, model: str, *, system_prompt: str | None = None
) -> UnifiedRequest:
    messages = []
    if system_prompt:
        messages.append(ChatMessage(role="system", content=system_prompt))
    messages.append(ChatMessage(role="user", content=text))
    return UnifiedRequest(messages=tuple(messages), model=model)


class Orchestrator:
    """Execute plans through a ``Dispatcher``.

    Parallel sub-tasks are dispatched together (bounded by *max_parallel*)
    and joined at one barrier. ``depends_on`` is descriptive only; it does
    not sequence execution. A failed sub-task is recorded on its ``SubTask``
    and never cancels its siblings.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        max_parallel: int = 8,
        timeout_s: float | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self.max_parallel = max(1, max_parallel)
        self.timeout_s = timeout_s

    def _deadline(self, decision: RoutingDecision) -> float | None:
        timeout_ms = decision.constraints.timeout
        return timeout_ms / 1000 if timeout_ms else self.timeout_s

    async def execute(
        self, plan: ExecutionPlan, decision: RoutingDecision
    ) -> OrchestratorResponse:
        start = time.perf_counter()
        logger.info(
            "Executing %s plan %s (%d task(s))", plan.strategy, plan.plan_id, len(plan.tasks)
        )
        if plan.strategy == "direct":
            sub_tasks, result, tier, usd = self._direct(plan)
        elif plan.strategy == "delegate":
            sub_tasks, result, tier, usd = await self._delegate(plan, decision)
        elif plan.strategy == "parallel":
            sub_tasks, result, tier, usd = await self._parallel(plan, decision)
        else:
            sub_tasks, result, tier, usd = self._escalate(plan)
        return OrchestratorResponse(
            strategy=plan.strategy,
            sub_tasks=sub_tasks,
            result=result,
            total_cost=tier,
            execution_time_ms=(time.perf_counter() - start) * 1000,
            decision=decision,
            plan_id=plan.plan_id,
            total_cost_usd=round(usd, 6),
        )

    def _direct(self, plan: ExecutionPlan) -> tuple[tuple[SubTask, ...], str, CostTier, float]:
        task = plan.tasks[0]
        sub = SubTask.from_plan_task(task)
        sub.start()
        sub.complete(
            f"Task should be handled directly using {task.model}. No sub-agents needed."
        )
        result = f'Direct execution recommended. Use {task.model} for: "{plan.task}"'
        return (sub,), result, plan.estimated_cost, 0.0

    def _escalate(
        self, plan: ExecutionPlan
    ) -> tuple[tuple[SubTask, ...], str, CostTier, float]:
        sub = SubTask(
            id=1,
            task=plan.task,
            model=HUMAN_REVIEW_MODEL,
            provider=plan.tasks[0].provider,
            result="Flagged for human review due to complexity or risk factors",
        )
        result = (
            f"Task escalated for human review. Complexity: {plan.complexity}/5. "
            "Reason: Task requires human oversight or exceeds automation capabilities."
        )
        return (sub,), result, "high", 0.0

    async def _delegate(
        self, plan: ExecutionPlan, decision: RoutingDecision
    ) -> tuple[tuple[SubTask, ...], str, CostTier, float]:
        task = plan.tasks[0]
        sub = SubTask.from_plan_task(task)
        sub.start()
        request = _user_request(task.task, task.model)
        try:
            response = await self._dispatcher.route_with_fallback(
                request, timeout_s=self._deadline(decision)
            )
        except GatewayError as e:
            logger.warning("Delegated task failed (type=%s)", e.code)
            sub.fail(e.public_message())
            result = f"Delegation to {task.model} failed: {e.public_message()}"
            return (sub,), result, plan.estimated_cost, 0.0
        sub.model = response.model
        sub.provider = response.provider
        sub.complete(response.content, cost=response.cost.total_cost)
        result = f"Delegated to {response.model}: {response.content}"
        return (sub,), result, plan.estimated_cost, response.cost.total_cost

    async def _run_subtask(
        self, sub: SubTask, plan_task: PlanTask, sem: asyncio.Semaphore, timeout_s: float | None
    ) -> None:
        async with sem:
            sub.start()
            request = _user_request(
                plan_task.task, plan_task.model, system_prompt=plan_task.system_prompt
            )
            try:
                response = await self._dispatcher.route(request, timeout_s=timeout_s)
            except asyncio.CancelledError:
                raise
            except GatewayError as e:
                logger.warning("Sub-task %d failed (type=%s)", sub.id, e.code)
                sub.fail(e.public_message())
                return
            sub.complete(response.content, cost=response.cost.total_cost)

    async def _parallel(
        self, plan: ExecutionPlan, decision: RoutingDecision
    ) -> tuple[tuple[SubTask, ...], str, CostTier, float]:
        sub_tasks = tuple(SubTask.from_plan_task(t) for t in plan.tasks)
        sem = asyncio.Semaphore(self.max_parallel)
        timeout_s = self._deadline(decision)
        logger.debug(
            "Fanning out %d sub-task(s) concurrency=%d", len(sub_tasks), self.max_parallel
        )
        outcomes = await asyncio.gather(
            *(
                self._run_subtask(sub, t, sem, timeout_s)
                for sub, t in zip(sub_tasks, plan.tasks, strict=True)
            ),
            return_exceptions=True,
        )
        for item in outcomes:
            if isinstance(item, BaseException):
                raise item

        completed = sum(1 for s in sub_tasks if s.status == "complete")
        usd = sum(s.cost for s in sub_tasks)
        method = plan.aggregation.method if plan.aggregation else "merge"
        if method == "select_best":
            body = select_best(sub_tasks)
        elif method == "synthesize" and completed and plan.aggregation is not None:
            body, synthesis_cost = await self._synthesize(
                plan.task, plan.aggregation.aggregator_model, sub_tasks, timeout_s
            )
            usd += synthesis_cost
        else:
            body = merge_results(sub_tasks)

        result = "Parallel execution completed. " + completeness_line(
            completed, len(sub_tasks)
        )
        if body:
            result = f"{result}\n\n{body}"
        return sub_tasks, result, total_cost_tier(len(sub_tasks), decision.estimated_cost), usd

    async def _synthesize(
        self,
        task: str,
        aggregator_model: str,
        sub_tasks: tuple[SubTask, ...],
        timeout_s: float | None,
    ) -> tuple[str, float]:
        merged = merge_results(sub_tasks)
        request = _user_request(
            f"Original task: {task}\n\nSub-task results:\n\n{merged}",
            aggregator_model,
            system_prompt=_SYNTHESIS_PROMPT,
        )
        try:
            response = await self._dispatcher.route(request, timeout_s=timeout_s)
        except GatewayError as e:
            logger.warning("Synthesis failed (type=%s); returning merged results", e.code)
            return merged, 0.0
        return response.content, response.cost.total_cost

"""Run a list of spec tasks one after another through a single orchestrator."""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from loguru import logger

from conductor.config import BatchConfig
from conductor.hooks.base import HookError
from conductor.orchestrator import FailureKind, RawPayload, WorkflowOrchestrator
from conductor.workflow.context import HandoffContext
from conductor.workflow.payload import SpecTaskRef
from conductor.workflow.roles import Role

TaskStatus = Literal["completed", "blocked", "skipped", "failed", "stalled"]
RoleDriver = Callable[[Role, HandoffContext], Awaitable[RawPayload]]

# Failures where asking the same role again can make progress.
RETRYABLE_FAILURES = frozenset({FailureKind.REFUSED, FailureKind.VALIDATION})


@dataclass(slots=True)
class TaskOutcome:
    task_id: str
    status: TaskStatus
    steps: int = 0
    final_role: Role = Role.IDLE
    error: str | None = None
    context_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "steps": self.steps,
            "final_role": self.final_role.value,
            "error": self.error,
            "context_id": self.context_id,
        }


@dataclass(slots=True)
class BatchSummary:
    outcomes: list[TaskOutcome] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.completed

    @property
    def all_succeeded(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class ScriptedDriver:
    """Replays canned handoffs per task and role.

    ``scripts`` maps a task id (or ``"default"``) to ``{role: [payload, ...]}``. Each
    role's payloads are consumed in order and the last one repeats once exhausted.
    """

    def __init__(self, scripts: Mapping[str, Mapping[str, Sequence[Any]]]) -> None:
        self._scripts = scripts
        self._queues: dict[tuple[str, Role], deque[Any]] = {}
        self._last: dict[tuple[str, Role], Any] = {}

    def _script_for(self, task_id: str) -> Mapping[str, Sequence[Any]]:
        script = self._scripts.get(task_id) or self._scripts.get("default")
        if script is None:
            raise HookError(f"No scripted handoffs for task {task_id}")
        return script

    async def __call__(self, role: Role, context: HandoffContext) -> RawPayload:
        task_id = context.spec_task_ref.task_id if context.spec_task_ref else "default"
        key = (task_id, role)
        if key not in self._queues:
            script = self._script_for(task_id)
            entries = script.get(role.value)
            if entries is None:
                raise HookError(f"No scripted handoff for role {role.value} in task {task_id}")
            self._queues[key] = deque(entries)
        queue = self._queues[key]
        if queue:
            self._last[key] = queue.popleft()
        elif key not in self._last:
            raise HookError(f"Scripted handoffs for {role.value} in task {task_id} are empty")
        return self._last[key]


class SpecTaskRunner:
    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        driver: RoleDriver,
        config: BatchConfig | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.driver = driver
        self.config = config or BatchConfig()

    async def run_task(self, task: SpecTaskRef, parent_task_id: str | None = None) -> TaskOutcome:
        orchestrator = self.orchestrator
        await orchestrator.reset()
        started = await orchestrator.start_from_spec_task(task, parent_task_id=parent_task_id)
        if not started.success:
            return TaskOutcome(task.task_id, "failed", error=started.error)

        steps = 0
        while True:
            role = orchestrator.current_role
            context = orchestrator.context
            context_id = context.id if context else None
            if role is Role.COMPLETED:
                return TaskOutcome(task.task_id, "completed", steps, role, context_id=context_id)
            if role is Role.BLOCKED:
                reason = None
                if context is not None and context.failure_history:
                    reason = context.failure_history[-1].details
                return TaskOutcome(task.task_id, "blocked", steps, role, reason, context_id)
            if steps >= self.config.max_steps_per_task:
                return TaskOutcome(
                    task.task_id,
                    "stalled",
                    steps,
                    role,
                    f"Gave up after {steps} handoffs in {role.value}",
                    context_id,
                )

            try:
                payload = await self.driver(role, context)
            except HookError as exc:
                logger.warning("Driver failed for task {} in {}: {}", task.task_id, role.value, exc)
                return TaskOutcome(task.task_id, "failed", steps, role, str(exc), context_id)

            result = await orchestrator.handle_role_completion(payload)
            steps += 1
            if result.success or result.failure is FailureKind.ESCALATED:
                continue
            if result.failure in RETRYABLE_FAILURES:
                logger.info("Task {}: {} handoff refused, asking again", task.task_id, role.value)
                continue
            return TaskOutcome(task.task_id, "failed", steps, role, result.error, context_id)

    async def run(self, tasks: Iterable[SpecTaskRef | Mapping[str, Any]]) -> BatchSummary:
        summary = BatchSummary()
        finished: set[str] = set()
        for raw in tasks:
            task = raw if isinstance(raw, SpecTaskRef) else SpecTaskRef.model_validate(dict(raw))
            missing = [dep for dep in task.dependencies if dep not in finished]
            if missing:
                outcome = TaskOutcome(
                    task.task_id, "skipped", error=f"Unmet dependencies: {', '.join(missing)}"
                )
                logger.warning("Skipping task {}: {}", task.task_id, outcome.error)
            else:
                outcome = await self.run_task(task)
                logger.info("Task {} finished as {}", task.task_id, outcome.status)

            summary.outcomes.append(outcome)
            if outcome.succeeded:
                finished.add(task.task_id)
            elif self.config.stop_on_failure:
                break
        return summary

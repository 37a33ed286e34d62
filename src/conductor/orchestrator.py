from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from conductor.config import WorkflowConfig
from conductor.hooks.base import (
    CompletionHook,
    CompletionNotice,
    EventBus,
    EventListener,
    EventType,
    HumanGate,
    ModeSwitcher,
    NullModeSwitcher,
    WorkflowEvent,
    deny_all,
)
from conductor.hooks.report import ReportGenerator
from conductor.workflow.classifiers import KeywordClassifier, NoteClassifier
from conductor.workflow.context import (
    HandoffContext,
    create_handoff_context,
    handoff_summary,
    merge_payload,
)
from conductor.workflow.decisions import Decision, HandoffRefused, decide
from conductor.workflow.payload import (
    HandoffPayload,
    PayloadError,
    SpecTaskRef,
    parse_handoff_payload,
)
from conductor.workflow.retry import RetryBump, RetryGuard
from conductor.workflow.roles import Role, coerce_role, display_name, mode_slug
from conductor.workflow.transitions import find_transition, validate_context

RawPayload = HandoffPayload | Mapping[str, Any] | str | None

_COUNTER_LABELS = {
    "test": "Test",
    "security": "Security audit",
    "design_review": "Design review",
}


class FailureKind(str, Enum):
    INVALID_TRANSITION = "invalid_transition"
    VALIDATION = "validation"
    NOT_ACTIVE = "not_active"
    ALREADY_ACTIVE = "already_active"
    REFUSED = "refused"
    INVALID_PAYLOAD = "invalid_payload"
    ESCALATED = "escalated"


@dataclass(slots=True)
class TransitionResult:
    success: bool
    from_role: Role
    to_role: Role
    error: str | None = None
    failure: FailureKind | None = None
    context: HandoffContext | None = None
    warnings: list[str] = field(default_factory=list)


class WorkflowOrchestrator:
    """Decides which role runs next and commits the move.

    All coroutine entry points share one lock, so callers queue rather than race on the
    current role, context and counters. Hooks run while the lock is held and must not
    call back into the same orchestrator.
    """

    def __init__(
        self,
        config: WorkflowConfig | None = None,
        *,
        mode_switcher: ModeSwitcher | None = None,
        human_gate: HumanGate | None = None,
        report: ReportGenerator | None = None,
        on_complete: CompletionHook | None = None,
        classifier: NoteClassifier | None = None,
    ) -> None:
        self.config = config or WorkflowConfig()
        self.mode_switcher = mode_switcher or NullModeSwitcher()
        self.human_gate = human_gate or deny_all
        self.report = report
        self.on_complete = on_complete
        self.classifier = classifier or KeywordClassifier()
        self.retry = RetryGuard.from_config(self.config)
        self.events = EventBus()
        self._role = Role.IDLE
        self._context: HandoffContext | None = None
        self._lock = asyncio.Lock()

    @property
    def current_role(self) -> Role:
        return self._role

    @property
    def context(self) -> HandoffContext | None:
        return self._context

    @property
    def is_active(self) -> bool:
        return self._role not in {Role.IDLE, Role.COMPLETED}

    def add_listener(self, listener: EventListener) -> None:
        self.events.add(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self.events.remove(listener)

    def _emit(
        self, event_type: EventType, from_role: Role, to_role: Role, message: str = ""
    ) -> list[str]:
        event = WorkflowEvent(
            type=event_type,
            from_role=from_role,
            to_role=to_role,
            context=self._context,
            message=message,
        )
        return self.events.emit(event)

    def _live_context(self) -> HandoffContext:
        if self._context is None:
            self._context = create_handoff_context(self._role, self._role)
        return self._context

    def _fail(self, kind: FailureKind, target: Role, error: str) -> TransitionResult:
        logger.info("Transition {} -> {} rejected: {}", self._role.value, target.value, error)
        return TransitionResult(
            success=False,
            from_role=self._role,
            to_role=target,
            error=error,
            failure=kind,
            context=self._context,
        )

    async def start(self) -> TransitionResult:
        async with self._lock:
            return await self._begin(spec_task=None, parent_task_id=None)

    async def start_from_spec_task(
        self,
        task: SpecTaskRef | Mapping[str, Any],
        parent_task_id: str | None = None,
    ) -> TransitionResult:
        if not isinstance(task, SpecTaskRef):
            task = SpecTaskRef.model_validate(dict(task))
        async with self._lock:
            return await self._begin(spec_task=task, parent_task_id=parent_task_id)

    async def transition(self, target: Role | str) -> TransitionResult:
        target = coerce_role(target)
        async with self._lock:
            return await self._checked_transition(target)

    async def handle_role_completion(self, payload: RawPayload = None) -> TransitionResult:
        async with self._lock:
            return await self._handle_completion(payload)

    async def reset(self) -> None:
        async with self._lock:
            previous = self._role
            self._emit(EventType.TRANSITION, previous, Role.IDLE, "reset")
            self._role = Role.IDLE
            self._context = None
            self.retry.reset_all()
            logger.debug("Workflow reset from {}", previous.value)

    def force_state(self, role: Role | str) -> None:
        role = coerce_role(role)
        logger.warning("Forcing workflow state {} -> {}", self._role.value, role.value)
        self._role = role

    def get_status(self) -> dict[str, Any]:
        context = self._context
        return {
            "current_role": self._role.value,
            "is_active": self.is_active,
            **self.retry.snapshot(),
            "has_context": context is not None,
            "context_id": context.id if context else None,
            "attempt_number": context.attempt_number if context else None,
        }

    def context_summary(self) -> str:
        if self._context is None:
            return ""
        return handoff_summary(self._context)

    async def _begin(
        self, *, spec_task: SpecTaskRef | None, parent_task_id: str | None
    ) -> TransitionResult:
        if self._role is not Role.IDLE:
            return self._fail(
                FailureKind.ALREADY_ACTIVE,
                Role.PLANNER,
                f"Workflow already active in {self._role.value}; reset it first",
            )
        self._context = create_handoff_context(
            Role.IDLE, Role.PLANNER, spec_task=spec_task, parent_task_id=parent_task_id
        )
        if spec_task is not None:
            logger.info("Starting spec task {}: {}", spec_task.task_id, spec_task.title)
        return await self._commit(Role.PLANNER, "started")

    async def _checked_transition(self, target: Role) -> TransitionResult:
        source = self._role
        # planner is reachable from anywhere so a stuck unit can always be re-planned
        if find_transition(source, target) is None and target is not Role.PLANNER:
            return self._fail(
                FailureKind.INVALID_TRANSITION,
                target,
                f"Invalid transition: {source.value} -> {target.value}",
            )
        errors = validate_context(self._context, target)
        if errors:
            return self._fail(
                FailureKind.VALIDATION, target, "Context validation failed: " + "; ".join(errors)
            )
        return await self._commit(target)

    async def _commit(self, target: Role, message: str = "") -> TransitionResult:
        source = self._role
        context = self._live_context()

        self._role = target
        if target is Role.PLANNER and source is not Role.IDLE:
            context.attempt_number += 1
        context.record_hop(source, target)
        context.status = "completed" if target is Role.COMPLETED else "in_progress"
        self.retry.on_enter(target)
        logger.info(
            "Workflow {}: {} -> {}", context.id, display_name(source), display_name(target)
        )

        warnings: list[str] = []
        mode = mode_slug(target)
        if mode is not None:
            try:
                await self.mode_switcher.switch_active_role(target, mode)
            except Exception as exc:
                logger.warning("Mode switch to {} failed: {}", target.value, exc)
                warnings.append(f"mode switch failed: {exc}")

        warnings.extend(self._emit(EventType.TRANSITION, source, target, message))
        if target is Role.COMPLETED:
            warnings.extend(await self._finish(source))

        return TransitionResult(
            success=True, from_role=source, to_role=target, context=context, warnings=warnings
        )

    async def _finish(self, source: Role) -> list[str]:
        context = self._live_context()
        warnings = self._emit(EventType.COMPLETED, source, Role.COMPLETED, "workflow completed")

        if self.report is not None and not context.is_nested:
            try:
                await self.report.generate(context)
            except Exception as exc:
                logger.warning("Report generation failed for {}: {}", context.id, exc)
                warnings.append(f"report failed: {exc}")
                warnings.extend(
                    self._emit(EventType.ERROR, source, Role.COMPLETED, f"report failed: {exc}")
                )

        warnings.extend(await self._notify_completion(success=True))
        return warnings

    async def _notify_completion(self, *, success: bool) -> list[str]:
        context = self._context
        if self.on_complete is None or context is None:
            return []
        notice = CompletionNotice(
            context_id=context.id,
            spec_task_id=context.spec_task_ref.task_id if context.spec_task_ref else None,
            parent_task_id=context.parent_task_id,
            success=success,
        )
        try:
            await self.on_complete(notice)
        except Exception as exc:
            logger.warning("Completion hook failed for {}: {}", context.id, exc)
            return [f"completion hook failed: {exc}"]
        return []

    async def _handle_completion(self, raw: RawPayload) -> TransitionResult:
        source = self._role
        if source in {Role.IDLE, Role.COMPLETED}:
            return self._fail(
                FailureKind.NOT_ACTIVE, source, f"No active role to complete ({source.value})"
            )
        try:
            payload = parse_handoff_payload(raw)
        except PayloadError as exc:
            return self._fail(FailureKind.INVALID_PAYLOAD, source, str(exc))

        context = self._live_context()
        try:
            decision = decide(
                source, context, payload, policy=self.config, classifier=self.classifier
            )
        except HandoffRefused as exc:
            return self._fail(FailureKind.REFUSED, source, str(exc))

        if decision.design_passed is False and self.retry.design_review_exhausted:
            return await self._auto_resolve_design(payload)

        return await self._route(payload, decision)

    async def _route(self, payload: HandoffPayload, decision: Decision) -> TransitionResult:
        source = self._role
        target = decision.next_role
        context = self._live_context()

        if find_transition(source, target) is None and target is not Role.PLANNER:
            return self._fail(
                FailureKind.INVALID_TRANSITION,
                target,
                f"Invalid transition: {source.value} -> {target.value}",
            )
        staged = copy.deepcopy(context)
        merge_payload(staged, source, payload)
        errors = validate_context(staged, target)
        if errors:
            return self._fail(
                FailureKind.VALIDATION, target, "Context validation failed: " + "; ".join(errors)
            )

        merge_payload(context, source, payload)
        logger.debug("Decision {} -> {}: {}", source.value, target.value, decision.reason)
        if decision.design_passed is not None:
            context.design_review_passed = decision.design_passed
            if decision.design_passed:
                self.retry.reset_design_review()
            elif decision.feedback:
                context.design_notes.append(decision.feedback)
        if decision.feedback:
            context.review_feedback = decision.feedback
        if decision.reset_counters:
            self.retry.reset_all()
            logger.info("Recovering {} from blocked state", context.id)

        warnings: list[str] = []
        bump = self.retry.register(source, target)
        if bump is not None:
            context.record_failure(source, decision.reason, decision.feedback)
            warnings.extend(
                self._emit(
                    EventType.RETRY,
                    source,
                    target,
                    f"{_COUNTER_LABELS[bump.counter]} rejection {bump.count}/{bump.limit}",
                )
            )
            if bump.exhausted and bump.counter != "design_review":
                result = await self._escalate(bump)
                result.warnings[:0] = warnings
                return result
        elif decision.replan:
            context.record_failure(source, decision.reason, decision.feedback)

        result = await self._commit(target, decision.reason)
        result.warnings[:0] = warnings
        return result

    async def _auto_resolve_design(self, payload: HandoffPayload) -> TransitionResult:
        context = self._live_context()
        merge_payload(context, Role.DESIGN_REVIEW, payload)
        note = (
            f"Design review auto-approved after {self.retry.design_review_rejections} "
            "rejections to keep the workflow moving"
        )
        logger.warning("{}: {}", context.id, note)
        context.design_review_passed = True
        context.design_notes.append(note)
        context.record_failure(Role.DESIGN_REVIEW, "Design review auto-resolved", note)
        self.retry.reset_design_review()
        target = Role.COMPLETED if context.is_nested else Role.BUILDER
        return await self._commit(target, note)

    async def _escalate(self, bump: RetryBump) -> TransitionResult:
        source = self._role
        context = self._live_context()
        reason = (
            f"{_COUNTER_LABELS[bump.counter]} rejected {bump.count} times "
            f"(limit {bump.limit}); human intervention required"
        )
        context.record_failure(source, "Retry limit reached", reason)
        context.status = "blocked"
        logger.warning("{}: {}", context.id, reason)

        if await self.human_gate(reason, context):
            logger.info("Human approved continuation for {}", context.id)
            self.retry.reset_escalation()
            return await self._commit(Role.BUILDER, "resumed after human approval")
        return await self._block(reason)

    async def _block(self, reason: str) -> TransitionResult:
        source = self._role
        context = self._live_context()
        self._role = Role.BLOCKED
        context.record_hop(source, Role.BLOCKED)
        context.status = "blocked"
        warnings = self._emit(EventType.BLOCKED, source, Role.BLOCKED, reason)
        if context.spec_task_ref is not None:
            warnings.extend(await self._notify_completion(success=False))
        return TransitionResult(
            success=False,
            from_role=source,
            to_role=Role.BLOCKED,
            error=reason,
            failure=FailureKind.ESCALATED,
            context=context,
            warnings=warnings,
        )

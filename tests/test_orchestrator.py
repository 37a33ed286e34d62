import asyncio
import itertools
from typing import Any

import pytest

from conductor.config import WorkflowConfig
from conductor.hooks.base import CompletionNotice, EventType, ModeSwitcher, WorkflowEvent
from conductor.hooks.report import ReportError, ReportGenerator, ReportResult
from conductor.orchestrator import FailureKind, TransitionResult, WorkflowOrchestrator
from conductor.workflow.context import HandoffContext
from conductor.workflow.roles import Role
from conductor.workflow.transitions import find_transition

BUILD = {"buildOutput": {"changedFiles": ["app.py"], "targetUrl": "http://localhost:3000"}}
TESTS_PASS = {"testOutcome": {"testsPassed": True}}
TESTS_FAIL = {"testOutcome": {"testsPassed": False}}
SECURE = {"securityOutcome": {"securityPassed": True, "recommendation": "approve"}}
INSECURE = {"securityOutcome": {"securityPassed": False, "summary": "SQL injection in search"}}


class FakeModeSwitcher(ModeSwitcher):
    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.roles: list[Role] = []
        self.modes: list[str] = []

    async def switch_active_role(self, role: Role, mode: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.roles.append(role)
        self.modes.append(mode)
        if self.fail:
            raise RuntimeError("host unavailable")


class FakeReport(ReportGenerator):
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.contexts: list[HandoffContext] = []

    async def generate(self, context: HandoffContext) -> ReportResult:
        self.contexts.append(context)
        if self.fail:
            raise ReportError("disk full")
        return ReportResult(path=None)


class FakeGate:
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.reasons: list[str] = []

    async def __call__(self, reason: str, context: HandoffContext) -> bool:
        self.reasons.append(reason)
        return self.answer


class RecordingHook:
    def __init__(self) -> None:
        self.notices: list[CompletionNotice] = []

    async def __call__(self, notice: CompletionNotice) -> None:
        self.notices.append(notice)


def _orchestrator(**kwargs: Any) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(kwargs.pop("config", None), **kwargs)


async def _start_to_builder(orchestrator: WorkflowOrchestrator) -> TransitionResult:
    await orchestrator.start()
    return await orchestrator.handle_role_completion({"hasUI": False, "plan": {"tasks": []}})


async def _fail_tests_once(orchestrator: WorkflowOrchestrator) -> TransitionResult:
    await orchestrator.handle_role_completion(BUILD)
    await orchestrator.handle_role_completion({"approved": True})
    return await orchestrator.handle_role_completion(TESTS_FAIL)


async def _builder_to_security(orchestrator: WorkflowOrchestrator) -> TransitionResult:
    await orchestrator.handle_role_completion(BUILD)
    await orchestrator.handle_role_completion({"approved": True})
    await orchestrator.handle_role_completion(TESTS_PASS)
    return await orchestrator.handle_role_completion({"approved": True})


def test_happy_path_reaches_completed_and_writes_one_report() -> None:
    switcher = FakeModeSwitcher()
    report = FakeReport()
    hook = RecordingHook()
    orchestrator = _orchestrator(mode_switcher=switcher, report=report, on_complete=hook)
    events: list[WorkflowEvent] = []
    orchestrator.add_listener(events.append)

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        reached = await _builder_to_security(orchestrator)
        assert reached.to_role is Role.SECURITY_AUDIT
        await orchestrator.handle_role_completion(SECURE)
        return await orchestrator.handle_role_completion({"approved": True})

    final = asyncio.run(scenario())

    assert final.success is True
    assert final.to_role is Role.COMPLETED
    assert orchestrator.current_role is Role.COMPLETED
    assert switcher.roles == [
        Role.PLANNER,
        Role.BUILDER,
        Role.CODE_REVIEW,
        Role.TESTER,
        Role.TEST_REVIEW,
        Role.SECURITY_AUDIT,
        Role.FINAL_REVIEW,
        Role.COMPLETED,
    ]
    assert switcher.modes[:3] == ["pipeline-planner", "pipeline-builder", "pipeline-code-review"]
    assert switcher.modes[-1] == "code"
    assert len(report.contexts) == 1
    assert [event.type for event in events].count(EventType.COMPLETED) == 1
    assert hook.notices[0].success is True
    context = orchestrator.context
    assert context is not None
    assert context.status == "completed"
    assert (context.from_role, context.to_role) == (Role.FINAL_REVIEW, Role.COMPLETED)
    assert len(context.role_history) == 8
    assert orchestrator.get_status()["is_active"] is False


def test_start_twice_is_rejected() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await orchestrator.start()
        return await orchestrator.start()

    second = asyncio.run(scenario())

    assert second.success is False
    assert second.failure is FailureKind.ALREADY_ACTIVE
    assert orchestrator.current_role is Role.PLANNER


def test_completion_without_an_active_role_is_rejected() -> None:
    orchestrator = _orchestrator()

    result = asyncio.run(orchestrator.handle_role_completion({"notes": "hello"}))

    assert result.failure is FailureKind.NOT_ACTIVE
    assert orchestrator.context is None


def test_invalid_transition_leaves_state_untouched() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await orchestrator.start()
        return await orchestrator.transition(Role.FINAL_REVIEW)

    result = asyncio.run(scenario())

    assert result.success is False
    assert result.failure is FailureKind.INVALID_TRANSITION
    assert orchestrator.current_role is Role.PLANNER
    assert orchestrator.context is not None
    assert len(orchestrator.context.role_history) == 1


@pytest.mark.parametrize(
    ("source", "target"),
    [
        (source, target)
        for source, target in itertools.product(Role, Role)
        if target is not Role.PLANNER and find_transition(source, target) is None
    ],
)
def test_every_edge_missing_from_the_table_is_rejected(source: Role, target: Role) -> None:
    orchestrator = _orchestrator()
    orchestrator.force_state(source)

    result = asyncio.run(orchestrator.transition(target))

    assert result.success is False
    assert result.failure is FailureKind.INVALID_TRANSITION
    assert orchestrator.current_role is source


def test_planner_is_reachable_from_any_role() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        return await orchestrator.transition("planner")

    result = asyncio.run(scenario())

    assert result.success is True
    assert (result.from_role, result.to_role) == (Role.BUILDER, Role.PLANNER)


def test_validation_failure_does_not_commit_or_merge() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> tuple[TransitionResult, TransitionResult]:
        await _start_to_builder(orchestrator)
        direct = await orchestrator.transition(Role.CODE_REVIEW)
        handoff = await orchestrator.handle_role_completion({"notes": "forgot the build"})
        return direct, handoff

    direct, handoff = asyncio.run(scenario())

    assert direct.failure is FailureKind.VALIDATION
    assert handoff.failure is FailureKind.VALIDATION
    assert "build output" in (handoff.error or "")
    assert orchestrator.current_role is Role.BUILDER
    assert orchestrator.context is not None
    assert orchestrator.context.previous_notes == ""


def test_refused_designer_handoff_changes_nothing() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await orchestrator.start()
        await orchestrator.handle_role_completion({"needsDesign": True})
        return await orchestrator.handle_role_completion(
            {"expectedElementCount": 3, "notes": "first pass"}
        )

    result = asyncio.run(scenario())

    assert result.failure is FailureKind.REFUSED
    assert orchestrator.current_role is Role.DESIGNER
    context = orchestrator.context
    assert context is not None
    assert context.expected_element_count is None
    assert context.previous_notes == ""


def test_malformed_payload_is_rejected() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await orchestrator.start()
        return await orchestrator.handle_role_completion("{broken")

    result = asyncio.run(scenario())

    assert result.failure is FailureKind.INVALID_PAYLOAD
    assert orchestrator.current_role is Role.PLANNER


def test_json_string_payload_drives_a_transition() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await orchestrator.start()
        return await orchestrator.handle_role_completion('{"hasUI": "false"}')

    assert asyncio.run(scenario()).to_role is Role.BUILDER


def test_third_test_rejection_asks_the_human_and_resumes_on_approval() -> None:
    gate = FakeGate(answer=True)
    orchestrator = _orchestrator(human_gate=gate)
    events: list[WorkflowEvent] = []
    orchestrator.add_listener(events.append)

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        await _fail_tests_once(orchestrator)
        await _fail_tests_once(orchestrator)
        assert orchestrator.get_status()["test_rejections"] == 2
        assert gate.reasons == []
        return await _fail_tests_once(orchestrator)

    third = asyncio.run(scenario())

    assert len(gate.reasons) == 1
    assert third.success is True
    assert third.to_role is Role.BUILDER
    assert orchestrator.get_status()["test_rejections"] == 0
    assert [event.type for event in events].count(EventType.RETRY) == 3
    context = orchestrator.context
    assert context is not None
    assert context.failure_history[-1].reason == "Retry limit reached"


def test_test_review_rejections_share_the_test_counter() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        await _fail_tests_once(orchestrator)
        await orchestrator.handle_role_completion(BUILD)
        await orchestrator.handle_role_completion({})
        await orchestrator.handle_role_completion(TESTS_PASS)
        return await orchestrator.handle_role_completion(
            {"approved": False, "notes": "missing negative cases"}
        )

    result = asyncio.run(scenario())

    assert result.to_role is Role.BUILDER
    assert orchestrator.get_status()["test_rejections"] == 2
    assert orchestrator.context is not None
    assert orchestrator.context.review_feedback == "missing negative cases"


def test_prose_only_tester_round_clears_the_previous_failure() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        await _fail_tests_once(orchestrator)
        await orchestrator.handle_role_completion(BUILD)
        await orchestrator.handle_role_completion({"approved": True})
        reported = await orchestrator.handle_role_completion({"notes": "All tests passed now"})
        assert reported.to_role is Role.TEST_REVIEW
        return await orchestrator.handle_role_completion({"approved": True, "notes": "looks good"})

    result = asyncio.run(scenario())

    assert (result.from_role, result.to_role) == (Role.TEST_REVIEW, Role.SECURITY_AUDIT)
    assert orchestrator.get_status()["test_rejections"] == 0
    context = orchestrator.context
    assert context is not None
    assert context.test_outcome is not None
    assert context.test_outcome.tests_passed is None


def test_denied_escalation_blocks_and_recovery_resets_counters() -> None:
    switcher = FakeModeSwitcher()
    orchestrator = _orchestrator(mode_switcher=switcher)
    events: list[WorkflowEvent] = []
    orchestrator.add_listener(events.append)

    async def scenario() -> tuple[TransitionResult, TransitionResult]:
        await _start_to_builder(orchestrator)
        for _ in range(2):
            await _fail_tests_once(orchestrator)
        blocked = await _fail_tests_once(orchestrator)
        recovered = await orchestrator.handle_role_completion(TESTS_PASS)
        return blocked, recovered

    blocked, recovered = asyncio.run(scenario())

    assert blocked.success is False
    assert blocked.failure is FailureKind.ESCALATED
    assert blocked.to_role is Role.BLOCKED
    assert Role.BLOCKED not in switcher.roles
    assert EventType.BLOCKED in [event.type for event in events]
    assert recovered.success is True
    assert (recovered.from_role, recovered.to_role) == (Role.BLOCKED, Role.CODE_REVIEW)
    status = orchestrator.get_status()
    assert status["test_rejections"] == 0
    assert status["security_rejections"] == 0
    assert status["design_review_rejections"] == 0


def test_blocked_recovery_with_failing_tests_goes_back_to_builder() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        for _ in range(3):
            await _fail_tests_once(orchestrator)
        assert orchestrator.current_role is Role.BLOCKED
        return await orchestrator.handle_role_completion(TESTS_FAIL)

    result = asyncio.run(scenario())

    assert result.to_role is Role.BUILDER
    assert orchestrator.get_status()["test_rejections"] == 0


def test_security_rejections_replan_then_escalate() -> None:
    gate = FakeGate(answer=False)
    switcher = FakeModeSwitcher()
    orchestrator = _orchestrator(human_gate=gate, mode_switcher=switcher)

    async def scenario() -> tuple[TransitionResult, TransitionResult]:
        await _start_to_builder(orchestrator)
        await _fail_tests_once(orchestrator)
        await _builder_to_security(orchestrator)
        assert orchestrator.get_status()["test_rejections"] == 0
        first = await orchestrator.handle_role_completion(INSECURE)
        await orchestrator.handle_role_completion({"hasUI": False})
        await _builder_to_security(orchestrator)
        second = await orchestrator.handle_role_completion(INSECURE)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.to_role is Role.PLANNER
    assert second.failure is FailureKind.ESCALATED
    assert orchestrator.current_role is Role.BLOCKED
    assert len(gate.reasons) == 1
    assert "Security audit" in gate.reasons[0]
    context = orchestrator.context
    assert context is not None
    assert context.attempt_number == 2
    assert context.status == "blocked"
    assert context.review_feedback == "SQL injection in search"
    assert orchestrator.get_status()["security_rejections"] == 2


def test_approved_security_escalation_resumes_at_builder() -> None:
    orchestrator = _orchestrator(
        config=WorkflowConfig(max_security_retries=1), human_gate=FakeGate(answer=True)
    )

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        await _builder_to_security(orchestrator)
        return await orchestrator.handle_role_completion(INSECURE)

    result = asyncio.run(scenario())

    assert result.success is True
    assert (result.from_role, result.to_role) == (Role.SECURITY_AUDIT, Role.BUILDER)
    assert orchestrator.get_status()["security_rejections"] == 0


def test_completed_resets_security_counter() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> None:
        await _start_to_builder(orchestrator)
        await _builder_to_security(orchestrator)
        await orchestrator.handle_role_completion(INSECURE)
        assert orchestrator.get_status()["security_rejections"] == 1
        await orchestrator.handle_role_completion({"hasUI": False})
        await _builder_to_security(orchestrator)
        await orchestrator.handle_role_completion(SECURE)
        await orchestrator.handle_role_completion({})

    asyncio.run(scenario())

    assert orchestrator.current_role is Role.COMPLETED
    assert orchestrator.get_status()["security_rejections"] == 0


def test_design_review_auto_resolves_after_limit() -> None:
    orchestrator = _orchestrator(config=WorkflowConfig(max_design_review_retries=2))

    async def scenario() -> TransitionResult:
        await orchestrator.start()
        await orchestrator.handle_role_completion({"needsDesign": True})
        await orchestrator.handle_role_completion({"expectedElementCount": 20})
        for _ in range(2):
            rejected = await orchestrator.handle_role_completion({"notes": "footer is missing"})
            assert rejected.to_role is Role.DESIGNER
            await orchestrator.handle_role_completion({})
        assert orchestrator.get_status()["design_review_rejections"] == 2
        return await orchestrator.handle_role_completion({"notes": "still missing pieces"})

    result = asyncio.run(scenario())

    assert result.success is True
    assert result.to_role is Role.BUILDER
    context = orchestrator.context
    assert context is not None
    assert context.design_review_passed is True
    assert "auto-approved" in context.design_notes[-1]
    assert context.failure_history[-1].reason == "Design review auto-resolved"
    assert orchestrator.get_status()["design_review_rejections"] == 0


def test_passing_design_review_resets_its_counter() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await orchestrator.start()
        await orchestrator.handle_role_completion({"designToolRef": "https://design/1"})
        await orchestrator.handle_role_completion({"expectedElementCount": 18})
        await orchestrator.handle_role_completion({"designReviewPassed": False})
        await orchestrator.handle_role_completion({})
        return await orchestrator.handle_role_completion({"designReviewPassed": "true"})

    result = asyncio.run(scenario())

    assert result.to_role is Role.BUILDER
    assert orchestrator.get_status()["design_review_rejections"] == 0


def test_explicit_approval_after_limit_is_not_auto_resolved() -> None:
    orchestrator = _orchestrator(config=WorkflowConfig(max_design_review_retries=2))

    async def scenario() -> TransitionResult:
        await orchestrator.start()
        await orchestrator.handle_role_completion({"needsDesign": True})
        await orchestrator.handle_role_completion({"expectedElementCount": 20})
        for _ in range(2):
            await orchestrator.handle_role_completion({"notes": "footer is missing"})
            await orchestrator.handle_role_completion({})
        return await orchestrator.handle_role_completion({"designReviewPassed": True})

    result = asyncio.run(scenario())

    assert (result.from_role, result.to_role) == (Role.DESIGN_REVIEW, Role.BUILDER)
    context = orchestrator.context
    assert context is not None
    assert context.design_review_passed is True
    assert not any("auto-approved" in note for note in context.design_notes)
    assert all(r.reason != "Design review auto-resolved" for r in context.failure_history)
    assert orchestrator.get_status()["design_review_rejections"] == 0


def test_nested_unit_completes_after_design_without_report() -> None:
    report = FakeReport()
    hook = RecordingHook()
    orchestrator = _orchestrator(report=report, on_complete=hook)

    async def scenario() -> TransitionResult:
        await orchestrator.start_from_spec_task(
            {"taskId": "T-2", "title": "Settings screen"}, parent_task_id="T-1"
        )
        await orchestrator.handle_role_completion({"needsDesign": True})
        await orchestrator.handle_role_completion({"expectedElementCount": 16})
        return await orchestrator.handle_role_completion({"approved": True})

    result = asyncio.run(scenario())

    assert result.to_role is Role.COMPLETED
    assert report.contexts == []
    assert hook.notices == [
        CompletionNotice(
            context_id=result.context.id if result.context else "",
            spec_task_id="T-2",
            parent_task_id="T-1",
            success=True,
        )
    ]


def test_nested_auto_resolution_also_completes() -> None:
    orchestrator = _orchestrator(config=WorkflowConfig(max_design_review_retries=1))

    async def scenario() -> TransitionResult:
        await orchestrator.start_from_spec_task({"taskId": "T-3"}, parent_task_id="T-1")
        await orchestrator.handle_role_completion({"needsDesign": True})
        await orchestrator.handle_role_completion({"expectedElementCount": 16})
        await orchestrator.handle_role_completion({})
        await orchestrator.handle_role_completion({})
        return await orchestrator.handle_role_completion({})

    assert asyncio.run(scenario()).to_role is Role.COMPLETED


def test_blocked_spec_task_notifies_completion_hook() -> None:
    hook = RecordingHook()
    orchestrator = _orchestrator(on_complete=hook)

    async def scenario() -> None:
        await orchestrator.start_from_spec_task({"taskId": "T-9", "title": "Search"})
        await orchestrator.handle_role_completion({"hasUI": False})
        for _ in range(3):
            await _fail_tests_once(orchestrator)

    asyncio.run(scenario())

    assert orchestrator.current_role is Role.BLOCKED
    assert [(n.spec_task_id, n.success) for n in hook.notices] == [("T-9", False)]


def test_request_replan_increments_attempt_number() -> None:
    orchestrator = _orchestrator()

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        await orchestrator.handle_role_completion(BUILD)
        return await orchestrator.handle_role_completion({"requestReplan": True})

    result = asyncio.run(scenario())

    assert result.to_role is Role.PLANNER
    assert orchestrator.get_status()["attempt_number"] == 2


def test_failing_listener_and_mode_switcher_do_not_abort_commit() -> None:
    orchestrator = _orchestrator(mode_switcher=FakeModeSwitcher(fail=True))
    received: list[WorkflowEvent] = []

    def broken(event: WorkflowEvent) -> None:
        raise RuntimeError("listener down")

    orchestrator.add_listener(broken)
    orchestrator.add_listener(received.append)

    result = asyncio.run(orchestrator.start())

    assert result.success is True
    assert orchestrator.current_role is Role.PLANNER
    assert "mode switch failed: host unavailable" in result.warnings
    assert "listener error: listener down" in result.warnings
    assert len(received) == 1


def test_removed_listener_stops_receiving_events() -> None:
    orchestrator = _orchestrator()
    received: list[WorkflowEvent] = []
    orchestrator.add_listener(received.append)
    orchestrator.remove_listener(received.append)

    asyncio.run(orchestrator.start())

    assert received == []


def test_report_failure_becomes_a_warning_and_error_event() -> None:
    orchestrator = _orchestrator(report=FakeReport(fail=True))
    events: list[WorkflowEvent] = []
    orchestrator.add_listener(events.append)

    async def scenario() -> TransitionResult:
        await _start_to_builder(orchestrator)
        await _builder_to_security(orchestrator)
        await orchestrator.handle_role_completion(SECURE)
        return await orchestrator.handle_role_completion({"approved": True})

    result = asyncio.run(scenario())

    assert result.success is True
    assert orchestrator.current_role is Role.COMPLETED
    assert "report failed: disk full" in result.warnings
    assert EventType.ERROR in [event.type for event in events]


def test_human_gate_errors_propagate() -> None:
    async def exploding_gate(reason: str, context: HandoffContext) -> bool:
        raise RuntimeError("reviewer offline")

    orchestrator = _orchestrator(
        config=WorkflowConfig(max_test_retries=1), human_gate=exploding_gate
    )

    async def scenario() -> None:
        await _start_to_builder(orchestrator)
        await _fail_tests_once(orchestrator)

    with pytest.raises(RuntimeError, match="reviewer offline"):
        asyncio.run(scenario())


def test_concurrent_completions_are_serialized() -> None:
    orchestrator = _orchestrator(mode_switcher=FakeModeSwitcher(delay=0.01))

    async def scenario() -> list[TransitionResult]:
        await orchestrator.start()
        return list(
            await asyncio.gather(
                orchestrator.handle_role_completion({"hasUI": False}),
                orchestrator.handle_role_completion(BUILD),
            )
        )

    first, second = asyncio.run(scenario())

    assert (first.from_role, first.to_role) == (Role.PLANNER, Role.BUILDER)
    assert (second.from_role, second.to_role) == (Role.BUILDER, Role.CODE_REVIEW)


def test_reset_returns_to_idle() -> None:
    orchestrator = _orchestrator()
    events: list[WorkflowEvent] = []
    orchestrator.add_listener(events.append)

    async def scenario() -> None:
        await _start_to_builder(orchestrator)
        await _fail_tests_once(orchestrator)
        await orchestrator.reset()

    asyncio.run(scenario())

    assert orchestrator.current_role is Role.IDLE
    assert orchestrator.context is None
    assert orchestrator.get_status()["test_rejections"] == 0
    assert (events[-1].type, events[-1].to_role, events[-1].message) == (
        EventType.TRANSITION,
        Role.IDLE,
        "reset",
    )


def test_force_state_and_status_snapshot() -> None:
    orchestrator = _orchestrator()

    orchestrator.force_state("test-review")
    status = orchestrator.get_status()

    assert orchestrator.current_role is Role.TEST_REVIEW
    assert status == {
        "current_role": "test_review",
        "is_active": True,
        "test_rejections": 0,
        "security_rejections": 0,
        "design_review_rejections": 0,
        "has_context": False,
        "context_id": None,
        "attempt_number": None,
    }


def test_context_summary_reflects_live_context() -> None:
    orchestrator = _orchestrator()
    assert orchestrator.context_summary() == ""

    asyncio.run(_start_to_builder(orchestrator))

    summary = orchestrator.context_summary()
    assert "From: planner" in summary
    assert "To: builder" in summary

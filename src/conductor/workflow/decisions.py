"""Routing rules: which role runs after the current one finishes.

``decide`` is a pure function of the current role, the context as it stood before
this handoff, and the normalized payload. It never mutates either; the orchestrator
applies the merge and any counter changes after the decision is accepted.
"""

from __future__ import annotations

from dataclasses import dataclass

from conductor.config import WorkflowConfig
from conductor.workflow.classifiers import KeywordClassifier, NoteClassifier
from conductor.workflow.context import HandoffContext
from conductor.workflow.payload import HandoffPayload, ReviewApproval
from conductor.workflow.roles import Role

APPROVE_STATUSES = {"approved", "approve", "passed", "pass", "complete", "completed", "done"}
REJECT_STATUSES = {"rejected", "reject", "failed", "fail", "incomplete", "needs_revision"}


class HandoffRefused(Exception):
    """Raised when a role's handoff does not meet the bar to leave its phase."""


@dataclass(slots=True, frozen=True)
class Decision:
    next_role: Role
    reason: str
    design_passed: bool | None = None
    feedback: str = ""
    reset_counters: bool = False
    replan: bool = False


def _join_text(*parts: str | None) -> str:
    return "\n".join(part for part in parts if part)


def _approval(record: ReviewApproval | None, payload: HandoffPayload) -> tuple[bool | None, str]:
    if record is not None and record.approved is not None:
        return record.approved, record.feedback or payload.notes
    feedback = record.feedback if record is not None else ""
    return payload.approved, feedback or payload.notes


def _decide_planner(
    context: HandoffContext, payload: HandoffPayload, classifier: NoteClassifier
) -> Decision:
    has_ui_flags = (payload.has_ui, payload.plan_flag("hasUI", "has_ui", "hasUi"))
    if any(flag is False for flag in has_ui_flags):
        return Decision(Role.BUILDER, "plan declares no UI (hasUI=false)")

    tool_ref = payload.design_tool_ref or payload.plan_text(
        "designToolRef", "design_tool_ref", "designToolUrl", "figmaUrl"
    )
    if tool_ref:
        return Decision(Role.DESIGNER, f"design tool reference present: {tool_ref}")

    design_flags = (
        payload.needs_design,
        payload.plan_flag("needsDesign", "needs_design"),
        *has_ui_flags,
        payload.use_design_tool,
        payload.plan_flag("useDesignTool", "use_design_tool"),
    )
    if any(flag is True for flag in design_flags):
        return Decision(Role.DESIGNER, "plan requests UI design")

    request = payload.original_request or context.original_request
    if classifier.mentions_design(_join_text(payload.notes, request)):
        return Decision(Role.DESIGNER, "design keywords found in notes or request")

    return Decision(Role.BUILDER, "no UI design indicators")


def _decide_designer(
    context: HandoffContext,
    payload: HandoffPayload,
    classifier: NoteClassifier,
    policy: WorkflowConfig,
) -> Decision:
    count = payload.expected_element_count
    if count is None:
        count = context.expected_element_count
    if count is not None and count >= policy.min_design_elements:
        return Decision(Role.DESIGN_REVIEW, f"design has {count} elements")

    names = payload.created_component_names or context.created_component_names
    ui_matches = classifier.count_ui_elements(names)
    if len(names) >= policy.min_design_components and ui_matches >= policy.min_ui_keyword_matches:
        return Decision(
            Role.DESIGN_REVIEW,
            f"design has {len(names)} components, {ui_matches} real UI elements",
        )

    raise HandoffRefused(
        f"Design is incomplete: {count or 0} elements (need {policy.min_design_elements}), "
        f"{len(names)} components with {ui_matches} UI elements "
        f"(need {policy.min_design_components}/{policy.min_ui_keyword_matches}). "
        "Keep creating UI elements before handing off."
    )


def _decide_design_review(
    context: HandoffContext, payload: HandoffPayload, classifier: NoteClassifier
) -> Decision:
    status = payload.review_status
    explicit_reject = (
        payload.design_review_passed is False
        or payload.approved is False
        or (status is not None and status in REJECT_STATUSES)
    )
    approval_signal = (
        payload.design_review_passed is True
        or payload.approved is True
        or (status is not None and status in APPROVE_STATUSES)
        or classifier.approval_signal(payload.notes) is True
    )
    if approval_signal and not explicit_reject:
        target = Role.COMPLETED if context.is_nested else Role.BUILDER
        return Decision(target, "design review passed", design_passed=True)
    return Decision(
        Role.DESIGNER, "design review rejected", design_passed=False, feedback=payload.notes
    )


def _decide_builder(payload: HandoffPayload) -> Decision:
    if payload.needs_design_revision is True:
        return Decision(Role.DESIGNER, "builder requested design revision", feedback=payload.notes)
    return Decision(Role.CODE_REVIEW, "build submitted")


def _decide_code_review(payload: HandoffPayload) -> Decision:
    if payload.request_replan is True:
        return Decision(Role.PLANNER, "reviewer requested re-plan", replan=True)
    approved, feedback = _approval(payload.code_review_approval, payload)
    if approved is False:
        return Decision(Role.BUILDER, "code review rejected", feedback=feedback)
    return Decision(Role.TESTER, "code review approved")


def _decide_tester(payload: HandoffPayload, classifier: NoteClassifier) -> Decision:
    outcome = payload.test_outcome
    passed = outcome.tests_passed if outcome is not None else None
    if passed is False:
        return Decision(Role.BUILDER, "tests failed")
    if passed is None:
        notes = _join_text(payload.notes, outcome.notes if outcome is not None else None)
        if classifier.reports_test_failure(notes):
            return Decision(Role.BUILDER, "failure reported in tester notes", feedback=notes)
    if payload.needs_design_revision is True:
        return Decision(Role.DESIGNER, "tester requested design revision", feedback=payload.notes)
    return Decision(Role.TEST_REVIEW, "tests reported")


def _decide_test_review(
    context: HandoffContext, payload: HandoffPayload, classifier: NoteClassifier
) -> Decision:
    approved, feedback = _approval(payload.test_review_approval, payload)
    if approved is False:
        return Decision(Role.BUILDER, "test review rejected", feedback=feedback)
    outcome = payload.test_outcome or context.test_outcome
    if outcome is not None and outcome.tests_passed is False:
        return Decision(Role.BUILDER, "tests were marked failed", feedback=feedback)
    if classifier.reports_review_failure(payload.notes):
        return Decision(Role.BUILDER, "test failure found in review notes", feedback=feedback)
    return Decision(Role.SECURITY_AUDIT, "test review approved")


def _decide_security_audit(payload: HandoffPayload) -> Decision:
    outcome = payload.security_outcome
    if outcome is not None and (
        outcome.security_passed is False or outcome.recommendation == "reject"
    ):
        summary = outcome.summary or payload.notes
        return Decision(Role.PLANNER, "security audit failed", feedback=summary, replan=True)
    return Decision(Role.FINAL_REVIEW, "security audit passed")


def _decide_final_review(payload: HandoffPayload) -> Decision:
    approved, feedback = _approval(payload.final_review_approval, payload)
    if approved is False:
        return Decision(Role.PLANNER, "final review rejected", feedback=feedback, replan=True)
    return Decision(Role.COMPLETED, "final review approved")


def _decide_blocked(payload: HandoffPayload) -> Decision:
    outcome = payload.test_outcome
    passed = outcome.tests_passed if outcome is not None else None
    if passed is False:
        return Decision(Role.BUILDER, "recovery: tests still failing", reset_counters=True)
    if passed is True:
        return Decision(Role.CODE_REVIEW, "recovery: tests passing", reset_counters=True)
    return Decision(Role.CODE_REVIEW, "recovery: no test signal", reset_counters=True)


def decide(
    role: Role,
    context: HandoffContext,
    payload: HandoffPayload,
    *,
    policy: WorkflowConfig | None = None,
    classifier: NoteClassifier | None = None,
) -> Decision:
    """Pick the next role after ``role`` hands off ``payload``.

    Raises:
        HandoffRefused: The designer's output does not meet the quality floor.
        ValueError: ``role`` cannot complete a handoff (idle or completed).
    """
    policy = policy or WorkflowConfig()
    classifier = classifier or KeywordClassifier()

    if role is Role.PLANNER:
        return _decide_planner(context, payload, classifier)
    if role is Role.DESIGNER:
        return _decide_designer(context, payload, classifier, policy)
    if role is Role.DESIGN_REVIEW:
        return _decide_design_review(context, payload, classifier)
    if role is Role.BUILDER:
        return _decide_builder(payload)
    if role is Role.CODE_REVIEW:
        return _decide_code_review(payload)
    if role is Role.TESTER:
        return _decide_tester(payload, classifier)
    if role is Role.TEST_REVIEW:
        return _decide_test_review(context, payload, classifier)
    if role is Role.SECURITY_AUDIT:
        return _decide_security_audit(payload)
    if role is Role.FINAL_REVIEW:
        return _decide_final_review(payload)
    if role is Role.BLOCKED:
        return _decide_blocked(payload)
    raise ValueError(f"Role {role.value} does not hand off work")

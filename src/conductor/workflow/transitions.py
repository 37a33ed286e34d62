from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from conductor.workflow.context import HandoffContext
from conductor.workflow.roles import GATED_ROLES, Role

Guard = Callable[[HandoffContext | None], bool]


@dataclass(slots=True, frozen=True)
class Transition:
    source: Role
    target: Role
    guard: Guard
    label: str


def _always(_: HandoffContext | None) -> bool:
    return True


def _has_plan(ctx: HandoffContext | None) -> bool:
    return bool(ctx and ctx.plan)


def _wants_design(ctx: HandoffContext | None) -> bool:
    if not ctx or not ctx.plan:
        return False
    flags = ("hasUI", "needsDesign", "useDesignTool")
    return any(ctx.plan.get(flag) is True for flag in flags) or bool(ctx.plan.get("designToolRef"))


def _has_design(ctx: HandoffContext | None) -> bool:
    return bool(
        ctx
        and (
            ctx.expected_element_count is not None
            or ctx.created_component_names
            or ctx.design_specs_ref
        )
    )


def _design_passed(ctx: HandoffContext | None) -> bool:
    return bool(ctx and ctx.design_review_passed is True and not ctx.is_nested)


def _design_passed_nested(ctx: HandoffContext | None) -> bool:
    return bool(ctx and ctx.design_review_passed is True and ctx.is_nested)


def _design_failed(ctx: HandoffContext | None) -> bool:
    return bool(ctx and ctx.design_review_passed is False)


def _has_build(ctx: HandoffContext | None) -> bool:
    return bool(ctx and ctx.build_output is not None)


def _approved(attribute: str, expected: bool) -> Guard:
    """Silent reviews count as approvals; only an explicit ``False`` rejects."""

    def guard(ctx: HandoffContext | None) -> bool:
        record = getattr(ctx, attribute, None) if ctx else None
        rejected = record is not None and record.approved is False
        return not rejected if expected else rejected

    return guard


def _has_tests(ctx: HandoffContext | None) -> bool:
    return bool(ctx and ctx.test_outcome is not None)


def _tests_failed(ctx: HandoffContext | None) -> bool:
    return bool(ctx and ctx.test_outcome is not None and ctx.test_outcome.tests_passed is False)


def _tests_not_failed(ctx: HandoffContext | None) -> bool:
    return _has_tests(ctx) and not _tests_failed(ctx)


def _security_done(ctx: HandoffContext | None) -> bool:
    return bool(ctx and ctx.security_outcome is not None)


def _security_failed(ctx: HandoffContext | None) -> bool:
    outcome = ctx.security_outcome if ctx else None
    return bool(
        outcome is not None
        and (outcome.security_passed is False or outcome.recommendation == "reject")
    )


TRANSITIONS: tuple[Transition, ...] = (
    Transition(Role.IDLE, Role.PLANNER, _always, "Work item accepted, planning starts"),
    Transition(Role.PLANNER, Role.DESIGNER, _wants_design, "Plan needs UI design"),
    Transition(Role.PLANNER, Role.BUILDER, _has_plan, "Plan complete, build starts"),
    Transition(Role.DESIGNER, Role.DESIGN_REVIEW, _has_design, "Design submitted for review"),
    Transition(Role.DESIGN_REVIEW, Role.BUILDER, _design_passed, "Design approved"),
    Transition(
        Role.DESIGN_REVIEW, Role.COMPLETED, _design_passed_nested, "Nested design approved"
    ),
    Transition(Role.DESIGN_REVIEW, Role.DESIGNER, _design_failed, "Design incomplete"),
    Transition(Role.BUILDER, Role.CODE_REVIEW, _has_build, "Build ready for code review"),
    Transition(Role.BUILDER, Role.DESIGNER, _always, "Builder requested design revision"),
    Transition(
        Role.CODE_REVIEW,
        Role.TESTER,
        _approved("code_review_approval", True),
        "Code approved, testing starts",
    ),
    Transition(
        Role.CODE_REVIEW,
        Role.BUILDER,
        _approved("code_review_approval", False),
        "Code rejected",
    ),
    Transition(Role.TESTER, Role.TEST_REVIEW, _tests_not_failed, "Tests reported for review"),
    Transition(Role.TESTER, Role.BUILDER, _tests_failed, "Tests failed"),
    Transition(Role.TESTER, Role.DESIGNER, _always, "Tester requested design revision"),
    Transition(
        Role.TEST_REVIEW,
        Role.SECURITY_AUDIT,
        _approved("test_review_approval", True),
        "Test results accepted",
    ),
    Transition(
        Role.TEST_REVIEW,
        Role.BUILDER,
        _approved("test_review_approval", False),
        "Test results rejected",
    ),
    Transition(
        Role.SECURITY_AUDIT, Role.FINAL_REVIEW, _security_done, "Security audit complete"
    ),
    Transition(
        Role.SECURITY_AUDIT, Role.BUILDER, _security_failed, "Resume after human approval"
    ),
    Transition(
        Role.FINAL_REVIEW,
        Role.COMPLETED,
        _approved("final_review_approval", True),
        "Final review passed",
    ),
    Transition(Role.BLOCKED, Role.CODE_REVIEW, _always, "Recovered, re-review code"),
    Transition(Role.BLOCKED, Role.BUILDER, _tests_failed, "Recovered, fix failing tests"),
)


def find_transition(source: Role, target: Role) -> Transition | None:
    for transition in TRANSITIONS:
        if transition.source is source and transition.target is target:
            return transition
    return None


def available_transitions(source: Role, context: HandoffContext | None) -> list[Transition]:
    return [t for t in TRANSITIONS if t.source is source and t.guard(context)]


def validate_context(context: HandoffContext | None, target: Role) -> list[str]:
    """Return the reasons ``context`` cannot enter ``target``; empty means valid."""
    if target not in GATED_ROLES:
        return []
    if context is None:
        return [f"{target.value} requires a handoff context"]

    errors: list[str] = []
    if target is Role.DESIGN_REVIEW and not _has_design(context):
        errors.append("design review requires an element count, components, or design specs")
    if target is Role.CODE_REVIEW and context.build_output is None and context.test_outcome is None:
        errors.append("code review requires build output or a test outcome")
    if target in {Role.TEST_REVIEW, Role.SECURITY_AUDIT} and context.test_outcome is None:
        errors.append(f"{target.value} requires a test outcome")
    if target is Role.FINAL_REVIEW and context.security_outcome is None:
        errors.append("final review requires a security outcome")
    return errors

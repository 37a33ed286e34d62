from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from conductor.workflow.payload import (
    BuildOutput,
    HandoffPayload,
    ReviewApproval,
    SecurityOutcome,
    SpecTaskRef,
    TestOutcome,
)
from conductor.workflow.roles import Role, coerce_role

ContextStatus = Literal["pending", "in_progress", "completed", "blocked"]


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def generate_context_id() -> str:
    return f"hctx_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(slots=True)
class FailureRecord:
    role: Role
    reason: str
    details: str = ""
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class RoleHop:
    from_role: Role
    to_role: Role
    at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class HandoffContext:
    id: str = field(default_factory=generate_context_id)
    created_at: datetime = field(default_factory=_utcnow)
    from_role: Role = Role.IDLE
    to_role: Role = Role.IDLE
    status: ContextStatus = "pending"
    attempt_number: int = 1

    plan: dict[str, Any] | None = None
    original_request: str | None = None

    design_specs_ref: str | None = None
    expected_element_count: int | None = None
    created_component_names: list[str] = field(default_factory=list)
    design_review_passed: bool | None = None
    design_notes: list[str] = field(default_factory=list)

    build_output: BuildOutput | None = None
    test_outcome: TestOutcome | None = None
    code_review_approval: ReviewApproval | None = None
    test_review_approval: ReviewApproval | None = None
    final_review_approval: ReviewApproval | None = None
    security_outcome: SecurityOutcome | None = None

    review_feedback: str = ""
    previous_notes: str = ""
    failure_history: list[FailureRecord] = field(default_factory=list)
    role_history: list[RoleHop] = field(default_factory=list)

    spec_task_ref: SpecTaskRef | None = None
    parent_task_id: str | None = None

    @property
    def is_nested(self) -> bool:
        return bool(self.parent_task_id)

    def record_failure(self, role: Role, reason: str, details: str = "") -> FailureRecord:
        record = FailureRecord(role=role, reason=reason, details=details)
        self.failure_history.append(record)
        return record

    def record_hop(self, from_role: Role, to_role: Role) -> None:
        self.from_role = from_role
        self.to_role = to_role
        self.role_history.append(RoleHop(from_role=from_role, to_role=to_role))


def create_handoff_context(
    from_role: Role,
    to_role: Role,
    *,
    spec_task: SpecTaskRef | None = None,
    parent_task_id: str | None = None,
) -> HandoffContext:
    context = HandoffContext(from_role=from_role, to_role=to_role)
    if spec_task is not None:
        context.spec_task_ref = spec_task
        context.original_request = spec_task.description or spec_task.title or None
        context.plan = {
            "projectName": spec_task.title,
            "summary": spec_task.description,
            "acceptanceCriteria": list(spec_task.acceptance_criteria),
            "specTaskId": spec_task.task_id,
        }
    context.parent_task_id = parent_task_id
    return context


def merge_payload(context: HandoffContext, role: Role, payload: HandoffPayload) -> None:
    """Fold a role's normalized handoff into the live context, in place."""
    if payload.notes:
        context.previous_notes = payload.notes
    if payload.original_request and not context.original_request:
        context.original_request = payload.original_request

    if role is Role.PLANNER:
        plan = dict(payload.plan) if payload.plan else payload.extra_fields()
        for key, value in (
            ("hasUI", payload.has_ui),
            ("needsDesign", payload.needs_design),
            ("useDesignTool", payload.use_design_tool),
            ("designToolRef", payload.design_tool_ref),
        ):
            if value is not None and key not in plan:
                plan[key] = value
        if plan:
            context.plan = {**(context.plan or {}), **plan}
    elif payload.plan:
        context.plan = {**(context.plan or {}), **payload.plan}

    if payload.design_specs_ref:
        context.design_specs_ref = payload.design_specs_ref
    if payload.expected_element_count is not None:
        context.expected_element_count = payload.expected_element_count
    if payload.created_component_names:
        context.created_component_names = list(payload.created_component_names)
    if payload.design_review_passed is not None:
        context.design_review_passed = payload.design_review_passed

    if payload.build_output is not None:
        context.build_output = payload.build_output

    if payload.test_outcome is not None:
        context.test_outcome = payload.test_outcome.model_copy(deep=True)
    elif role is Role.TESTER:
        # a tester round without an outcome replaces the previous round's record
        context.test_outcome = TestOutcome()
    if role is Role.TESTER and payload.notes and not context.test_outcome.notes:
        context.test_outcome.notes = payload.notes

    if payload.security_outcome is not None:
        context.security_outcome = payload.security_outcome.model_copy(deep=True)
    if role is Role.SECURITY_AUDIT:
        if context.security_outcome is None:
            context.security_outcome = SecurityOutcome()
        if payload.notes and not context.security_outcome.summary:
            context.security_outcome.summary = payload.notes

    approvals = {
        Role.CODE_REVIEW: ("code_review_approval", payload.code_review_approval),
        Role.TEST_REVIEW: ("test_review_approval", payload.test_review_approval),
        Role.FINAL_REVIEW: ("final_review_approval", payload.final_review_approval),
    }
    for review_role, (attribute, record) in approvals.items():
        if record is None and role is review_role and payload.approved is not None:
            record = ReviewApproval(approved=payload.approved, feedback=payload.notes)
        if record is not None:
            setattr(context, attribute, record)


def _iso(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def context_to_dict(context: HandoffContext) -> dict[str, Any]:
    def dump(model: Any) -> dict[str, Any] | None:
        return model.model_dump(mode="json") if model is not None else None

    return {
        "id": context.id,
        "created_at": _iso(context.created_at),
        "from_role": context.from_role.value,
        "to_role": context.to_role.value,
        "status": context.status,
        "attempt_number": context.attempt_number,
        "plan": context.plan,
        "original_request": context.original_request,
        "design_specs_ref": context.design_specs_ref,
        "expected_element_count": context.expected_element_count,
        "created_component_names": list(context.created_component_names),
        "design_review_passed": context.design_review_passed,
        "design_notes": list(context.design_notes),
        "build_output": dump(context.build_output),
        "test_outcome": dump(context.test_outcome),
        "code_review_approval": dump(context.code_review_approval),
        "test_review_approval": dump(context.test_review_approval),
        "final_review_approval": dump(context.final_review_approval),
        "security_outcome": dump(context.security_outcome),
        "review_feedback": context.review_feedback,
        "previous_notes": context.previous_notes,
        "failure_history": [
            {
                "role": item.role.value,
                "timestamp": _iso(item.timestamp),
                "reason": item.reason,
                "details": item.details,
            }
            for item in context.failure_history
        ],
        "role_history": [
            {"from_role": hop.from_role.value, "to_role": hop.to_role.value, "at": _iso(hop.at)}
            for hop in context.role_history
        ],
        "spec_task_ref": dump(context.spec_task_ref),
        "parent_task_id": context.parent_task_id,
    }


def context_from_dict(data: dict[str, Any]) -> HandoffContext:
    def load(model: type, key: str) -> Any:
        value = data.get(key)
        return model.model_validate(value) if value is not None else None

    return HandoffContext(
        id=str(data.get("id") or generate_context_id()),
        created_at=_parse_datetime(data["created_at"]) if data.get("created_at") else _utcnow(),
        from_role=coerce_role(data.get("from_role", Role.IDLE)),
        to_role=coerce_role(data.get("to_role", Role.IDLE)),
        status=data.get("status", "pending"),
        attempt_number=int(data.get("attempt_number", 1)),
        plan=data.get("plan"),
        original_request=data.get("original_request"),
        design_specs_ref=data.get("design_specs_ref"),
        expected_element_count=data.get("expected_element_count"),
        created_component_names=list(data.get("created_component_names", [])),
        design_review_passed=data.get("design_review_passed"),
        design_notes=list(data.get("design_notes", [])),
        build_output=load(BuildOutput, "build_output"),
        test_outcome=load(TestOutcome, "test_outcome"),
        code_review_approval=load(ReviewApproval, "code_review_approval"),
        test_review_approval=load(ReviewApproval, "test_review_approval"),
        final_review_approval=load(ReviewApproval, "final_review_approval"),
        security_outcome=load(SecurityOutcome, "security_outcome"),
        review_feedback=data.get("review_feedback", ""),
        previous_notes=data.get("previous_notes", ""),
        failure_history=[
            FailureRecord(
                role=coerce_role(item["role"]),
                reason=item.get("reason", ""),
                details=item.get("details", ""),
                timestamp=_parse_datetime(item["timestamp"]),
            )
            for item in data.get("failure_history", [])
        ],
        role_history=[
            RoleHop(
                from_role=coerce_role(hop["from_role"]),
                to_role=coerce_role(hop["to_role"]),
                at=_parse_datetime(hop["at"]),
            )
            for hop in data.get("role_history", [])
        ],
        spec_task_ref=load(SpecTaskRef, "spec_task_ref"),
        parent_task_id=data.get("parent_task_id"),
    )


def handoff_summary(context: HandoffContext) -> str:
    """Markdown digest injected into the next role's prompt."""
    lines: list[str] = [
        f"## Handoff Context (Attempt #{context.attempt_number})",
        f"From: {context.from_role.value}",
        f"To: {context.to_role.value}",
        "",
    ]

    if context.spec_task_ref is not None:
        lines.append(f"### Spec Task {context.spec_task_ref.task_id}")
        lines.append(context.spec_task_ref.title or "(untitled)")
        for criterion in context.spec_task_ref.acceptance_criteria:
            lines.append(f"- {criterion}")
        lines.append("")

    if context.previous_notes:
        lines.extend(["### Previous Notes", context.previous_notes, ""])

    if context.review_feedback:
        lines.extend(["### Reviewer Feedback", context.review_feedback, ""])

    if context.failure_history:
        lines.append(f"### Previous Failures ({len(context.failure_history)})")
        for failure in context.failure_history:
            lines.append(f"- [{failure.role.value}] {failure.reason}")
        lines.append("")

    if context.plan:
        tasks = context.plan.get("tasks")
        lines.append("### Plan")
        lines.append(f"Project: {context.plan.get('projectName') or 'Unnamed Project'}")
        lines.append(f"Tasks: {len(tasks) if isinstance(tasks, list) else 0}")
        lines.append("")

    if context.build_output is not None:
        lines.append("### Build Output")
        lines.append(f"Target URL: {context.build_output.target_url or 'Not specified'}")
        lines.append(f"Changed Files: {len(context.build_output.changed_files)}")
        lines.append("")

    if context.test_outcome is not None:
        passed = context.test_outcome.tests_passed
        lines.append("### Test Results")
        lines.append(f"Tests Passed: {'Unknown' if passed is None else passed}")
        lines.append("")

    if context.security_outcome is not None:
        security = context.security_outcome
        passed = security.security_passed
        lines.append("### Security Audit")
        lines.append(f"Security Passed: {'Unknown' if passed is None else passed}")
        lines.append(f"Vulnerabilities: {len(security.vulnerabilities)}")
        lines.append(f"Recommendation: {security.recommendation or 'None'}")
        lines.append("")

    return "\n".join(lines)

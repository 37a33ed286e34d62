from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    IDLE = "idle"
    PLANNER = "planner"
    DESIGNER = "designer"
    DESIGN_REVIEW = "design_review"
    BUILDER = "builder"
    CODE_REVIEW = "code_review"
    TESTER = "tester"
    TEST_REVIEW = "test_review"
    SECURITY_AUDIT = "security_audit"
    FINAL_REVIEW = "final_review"
    COMPLETED = "completed"
    BLOCKED = "blocked"


DEFAULT_MODE_SLUG = "code"

# Roles whose entry requires a populated handoff context.
GATED_ROLES = frozenset(
    {
        Role.DESIGN_REVIEW,
        Role.CODE_REVIEW,
        Role.TEST_REVIEW,
        Role.SECURITY_AUDIT,
        Role.FINAL_REVIEW,
    }
)

_MODE_SLUGS: dict[Role, str] = {
    Role.PLANNER: "pipeline-planner",
    Role.DESIGNER: "pipeline-designer",
    Role.DESIGN_REVIEW: "pipeline-design-review",
    Role.BUILDER: "pipeline-builder",
    Role.CODE_REVIEW: "pipeline-code-review",
    Role.TESTER: "pipeline-tester",
    Role.TEST_REVIEW: "pipeline-test-review",
    Role.SECURITY_AUDIT: "pipeline-security",
    Role.FINAL_REVIEW: "pipeline-final-review",
}

_DISPLAY_NAMES: dict[Role, str] = {
    Role.IDLE: "Idle",
    Role.PLANNER: "Planner",
    Role.DESIGNER: "Designer",
    Role.DESIGN_REVIEW: "Design Review",
    Role.BUILDER: "Builder",
    Role.CODE_REVIEW: "Code Review",
    Role.TESTER: "Tester",
    Role.TEST_REVIEW: "Test Review",
    Role.SECURITY_AUDIT: "Security Audit",
    Role.FINAL_REVIEW: "Final Review",
    Role.COMPLETED: "Completed",
    Role.BLOCKED: "Blocked",
}


def mode_slug(role: Role) -> str | None:
    """Mode the host should switch to for ``role``; ``None`` means stay put."""
    if role is Role.BLOCKED:
        return None
    return _MODE_SLUGS.get(role, DEFAULT_MODE_SLUG)


def display_name(role: Role) -> str:
    return _DISPLAY_NAMES.get(role, role.value)


def coerce_role(value: Role | str) -> Role:
    if isinstance(value, Role):
        return value
    normalized = str(value).strip().lower().replace("-", "_")
    try:
        return Role(normalized)
    except ValueError:
        raise ValueError(f"Unknown role: {value}") from None

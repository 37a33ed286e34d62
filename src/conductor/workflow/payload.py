"""Handoff payload boundary.

Roles report their output as loosely typed JSON: booleans may arrive as ``true``,
``"true"``, ``1`` or ``"1"``, and field names show up in camelCase or snake_case
depending on who wrote the prompt. Everything is normalized here, once, into typed
pydantic records before any routing logic looks at it.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
)

_TRUE_STRINGS = {"true", "1"}
_FALSE_STRINGS = {"false", "0"}


class PayloadError(ValueError):
    """Raised when a handoff payload cannot be parsed."""


def parse_boolish(value: Any) -> bool | None:
    """Tolerant tri-state boolean parser; unknown shapes map to ``None``."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    return None


def _parse_count(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _component_names(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    names: list[str] = []
    for item in value:
        if isinstance(item, str):
            if item.strip():
                names.append(item.strip())
        elif isinstance(item, Mapping):
            label = item.get("name") or item.get("type") or item.get("id")
            if label:
                names.append(str(label).strip())
    return names


def _lower_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


Boolish = Annotated[bool | None, BeforeValidator(parse_boolish)]
Count = Annotated[int | None, BeforeValidator(_parse_count)]
ComponentNames = Annotated[list[str], BeforeValidator(_component_names)]
LowerText = Annotated[str | None, BeforeValidator(_lower_or_none)]
Text = Annotated[str, BeforeValidator(_text)]


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class BuildOutput(_Record):
    changed_files: list[str] = Field(
        default_factory=list, validation_alias=_aliases("changedFiles", "changed_files")
    )
    run_command: str | None = Field(
        default=None, validation_alias=_aliases("runCommand", "run_command")
    )
    target_url: str | None = Field(
        default=None, validation_alias=_aliases("targetUrl", "target_url")
    )


class TestOutcome(_Record):
    __test__ = False

    tests_passed: Boolish = Field(
        default=None, validation_alias=_aliases("testsPassed", "tests_passed")
    )
    results: list[dict[str, Any]] = Field(
        default_factory=list, validation_alias=_aliases("testResults", "test_results", "results")
    )
    notes: Text = ""


class ReviewApproval(_Record):
    approved: Boolish = None
    feedback: Text = Field(
        default="",
        validation_alias=_aliases(
            "feedback", "codeFeedback", "testFeedback", "finalFeedback", "notes"
        ),
    )


class SecurityOutcome(_Record):
    security_passed: Boolish = Field(
        default=None, validation_alias=_aliases("securityPassed", "security_passed")
    )
    recommendation: LowerText = None
    vulnerabilities: list[dict[str, Any]] = Field(default_factory=list)
    summary: Text = ""


class SpecTaskRef(_Record):
    task_id: str = Field(validation_alias=_aliases("taskId", "task_id", "id"))
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = Field(
        default_factory=list,
        validation_alias=_aliases("acceptanceCriteria", "acceptance_criteria"),
    )
    complexity: Count = None
    spec_file: str | None = Field(default=None, validation_alias=_aliases("specFile", "spec_file"))
    dependencies: list[str] = Field(default_factory=list)


class HandoffPayload(_Record):
    """One role's completion report, normalized."""

    notes: Text = Field(
        default="", validation_alias=_aliases("notes", "previousAgentNotes", "previous_notes")
    )
    original_request: str | None = Field(
        default=None, validation_alias=_aliases("originalRequest", "original_request", "request")
    )
    plan: dict[str, Any] | None = Field(
        default=None, validation_alias=_aliases("plan", "architectPlan")
    )
    approved: Boolish = None

    # planner design signals
    design_tool_ref: str | None = Field(
        default=None,
        validation_alias=_aliases("designToolRef", "design_tool_ref", "designToolUrl", "figmaUrl"),
    )
    has_ui: Boolish = Field(default=None, validation_alias=_aliases("hasUI", "has_ui", "hasUi"))
    needs_design: Boolish = Field(
        default=None, validation_alias=_aliases("needsDesign", "needs_design")
    )
    use_design_tool: Boolish = Field(
        default=None, validation_alias=_aliases("useDesignTool", "use_design_tool")
    )

    # designer / design review
    design_specs_ref: str | None = Field(
        default=None, validation_alias=_aliases("designSpecsRef", "designSpecs", "design_specs")
    )
    expected_element_count: Count = Field(
        default=None,
        validation_alias=_aliases(
            "expectedElementCount", "expectedElements", "expected_elements"
        ),
    )
    created_component_names: ComponentNames = Field(
        default_factory=list,
        validation_alias=_aliases(
            "createdComponentNames", "createdComponents", "created_components"
        ),
    )
    design_review_passed: Boolish = Field(
        default=None, validation_alias=_aliases("designReviewPassed", "design_review_passed")
    )
    review_status: LowerText = Field(
        default=None, validation_alias=_aliases("reviewStatus", "designReviewStatus", "status")
    )

    build_output: BuildOutput | None = Field(
        default=None, validation_alias=_aliases("buildOutput", "build_output", "builderTestContext")
    )
    test_outcome: TestOutcome | None = Field(
        default=None, validation_alias=_aliases("testOutcome", "test_outcome", "qaAuditContext")
    )
    code_review_approval: ReviewApproval | None = Field(
        default=None,
        validation_alias=_aliases("codeReviewApproval", "code_review_approval", "codeReview"),
    )
    test_review_approval: ReviewApproval | None = Field(
        default=None,
        validation_alias=_aliases("testReviewApproval", "test_review_approval", "testReview"),
    )
    final_review_approval: ReviewApproval | None = Field(
        default=None,
        validation_alias=_aliases("finalReviewApproval", "final_review_approval", "finalReview"),
    )
    security_outcome: SecurityOutcome | None = Field(
        default=None,
        validation_alias=_aliases("securityOutcome", "security_outcome", "sentinelResult"),
    )

    needs_design_revision: Boolish = Field(
        default=None, validation_alias=_aliases("needsDesignRevision", "needs_design_revision")
    )
    request_replan: Boolish = Field(
        default=None, validation_alias=_aliases("requestReplan", "request_replan")
    )

    def plan_flag(self, *names: str) -> bool | None:
        """First boolean-like flag found under ``names`` inside ``plan``."""
        if not self.plan:
            return None
        for name in names:
            if name in self.plan:
                parsed = parse_boolish(self.plan[name])
                if parsed is not None:
                    return parsed
        return None

    def plan_text(self, *names: str) -> str | None:
        if not self.plan:
            return None
        for name in names:
            value = self.plan.get(name)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


def parse_handoff_payload(raw: HandoffPayload | Mapping[str, Any] | str | None) -> HandoffPayload:
    if isinstance(raw, HandoffPayload):
        return raw
    if raw is None:
        return HandoffPayload()
    data: Any = raw
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return HandoffPayload()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PayloadError(f"Handoff payload is not valid JSON: {exc}") from exc
    if not isinstance(data, Mapping):
        raise PayloadError(f"Handoff payload must be an object, got {type(data).__name__}")
    try:
        return HandoffPayload.model_validate(dict(data))
    except ValidationError as exc:
        raise PayloadError(f"Handoff payload failed validation: {exc}") from exc

"""Walkthrough report written when a root unit of work completes."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from conductor.config import ReportConfig
from conductor.hooks.base import HookError
from conductor.workflow.context import HandoffContext
from conductor.workflow.roles import Role, display_name

PLANNED_FLOW = (
    Role.PLANNER,
    Role.BUILDER,
    Role.CODE_REVIEW,
    Role.TESTER,
    Role.TEST_REVIEW,
    Role.SECURITY_AUDIT,
    Role.FINAL_REVIEW,
)


class ReportError(HookError):
    """Raised when the walkthrough cannot be rendered or written."""


@dataclass(slots=True)
class ReportResult:
    path: Path | None
    screenshots: list[str] = field(default_factory=list)


class ReportGenerator(ABC):
    @abstractmethod
    async def generate(self, context: HandoffContext) -> ReportResult:
        """Write a human-readable record of the finished unit of work."""


def _flag(value: bool | None, yes: str, no: str) -> str:
    if value is None:
        return "Unknown"
    return yes if value else no


def _mermaid_node(prefix: str, index: int, role: Role) -> str:
    return f'{prefix}{index}["{display_name(role)}"]'


def actual_flow(context: HandoffContext) -> list[Role]:
    roles: list[Role] = []
    for hop in context.role_history:
        if not roles and hop.from_role is not Role.IDLE:
            roles.append(hop.from_role)
        if hop.to_role is not Role.IDLE:
            roles.append(hop.to_role)
    return roles


def render_flow_diagram(context: HandoffContext) -> list[str]:
    lines = ["```mermaid", "flowchart LR", '    subgraph Planned["Planned Flow"]']
    for index, role in enumerate(PLANNED_FLOW[1:], start=1):
        previous = _mermaid_node("P", index - 1, PLANNED_FLOW[index - 1])
        lines.append(f"        {previous} --> {_mermaid_node('P', index, role)}")
    lines.append("    end")

    actual = actual_flow(context)
    lines.append('    subgraph Actual["Actual Flow"]')
    if len(actual) == 1:
        lines.append(f"        {_mermaid_node('A', 0, actual[0])}")
    for index in range(1, len(actual)):
        previous = _mermaid_node("A", index - 1, actual[index - 1])
        lines.append(f"        {previous} --> {_mermaid_node('A', index, actual[index])}")
    lines.extend(["    end", "```"])
    return lines


def render_walkthrough(
    context: HandoffContext, screenshots: list[str], *, completed_at: datetime | None = None
) -> str:
    completed_at = completed_at or datetime.now(UTC).replace(microsecond=0)
    lines = [
        "# Workflow Walkthrough",
        "",
        f"**Context:** `{context.id}`",
        "**Status:** Completed",
        f"**Completed at:** {completed_at.isoformat()}",
        f"**Attempts:** {context.attempt_number}",
        "",
        "---",
        "",
        "## Workflow Flow",
        "",
        *render_flow_diagram(context),
        "",
    ]

    plan = context.plan or {}
    if plan:
        lines.extend(
            [
                "## Plan",
                "",
                f"**Project:** {plan.get('projectName') or 'N/A'}",
                f"**Summary:** {plan.get('summary') or 'N/A'}",
                "",
            ]
        )
        tasks = plan.get("tasks")
        if isinstance(tasks, list) and tasks:
            lines.append("**Tasks:**")
            for task in tasks:
                title = task.get("title") if isinstance(task, dict) else task
                lines.append(f"- {title}")
            lines.append("")

    if context.design_notes:
        lines.extend(["## Design", ""])
        lines.extend(f"- {note}" for note in context.design_notes)
        lines.append("")

    build = context.build_output
    if build is not None:
        lines.extend(
            [
                "## Build",
                "",
                f"**Target URL:** {build.target_url or 'N/A'}",
                f"**Run Command:** {build.run_command or 'N/A'}",
                "",
            ]
        )
        if build.changed_files:
            lines.append("**Changed Files:**")
            lines.extend(f"- `{path}`" for path in build.changed_files)
            lines.append("")

    tests = context.test_outcome
    if tests is not None:
        lines.extend(
            [
                "## Tests",
                "",
                f"**Result:** {_flag(tests.tests_passed, 'PASSED', 'FAILED')}",
                "",
            ]
        )
        for result in tests.results:
            name = result.get("scenario") or result.get("name") or "unnamed"
            status = _flag(result.get("passed"), "pass", "fail")
            lines.append(f"- [{status}] {name}")
        if tests.results:
            lines.append("")

    security = context.security_outcome
    if security is not None:
        lines.extend(
            [
                "## Security Audit",
                "",
                f"**Result:** {_flag(security.security_passed, 'APPROVED', 'ISSUES FOUND')}",
                f"**Recommendation:** {security.recommendation or 'N/A'}",
            ]
        )
        for vulnerability in security.vulnerabilities:
            severity = vulnerability.get("severity", "unknown")
            lines.append(f"- [{severity}] {vulnerability.get('description', '')}")
        lines.append("")

    if context.failure_history:
        lines.extend(["## Failure History", ""])
        for failure in context.failure_history:
            lines.append(
                f"- {failure.timestamp.isoformat()} [{failure.role.value}] {failure.reason}"
            )
        lines.append("")

    if screenshots:
        lines.extend(["## Screenshots", ""])
        for index, name in enumerate(screenshots, start=1):
            lines.extend([f"### Screenshot {index}", f"![{name}](./{name})", ""])

    lines.extend(["---", "", "*Generated by conductor*", ""])
    return "\n".join(lines)


class WalkthroughReport(ReportGenerator):
    def __init__(self, config: ReportConfig | None = None) -> None:
        self.config = config or ReportConfig()

    @property
    def output_dir(self) -> Path:
        return Path(self.config.output_dir)

    def find_screenshots(self) -> list[str]:
        extensions = {ext.lower() for ext in self.config.screenshot_extensions}
        markers = [marker.lower() for marker in self.config.screenshot_markers]
        try:
            entries = sorted(self.output_dir.iterdir())
        except OSError as exc:
            logger.warning("Could not scan {} for screenshots: {}", self.output_dir, exc)
            return []
        return [
            entry.name
            for entry in entries
            if entry.is_file()
            and entry.suffix.lower() in extensions
            and any(marker in entry.name.lower() for marker in markers)
        ]

    def _write(self, context: HandoffContext) -> ReportResult:
        screenshots = self.find_screenshots()
        path = self.output_dir / self.config.filename
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(render_walkthrough(context, screenshots), encoding="utf-8")
        except OSError as exc:
            raise ReportError(f"Could not write walkthrough to {path}: {exc}") from exc
        logger.info("Walkthrough written to {}", path)
        return ReportResult(path=path, screenshots=screenshots)

    async def generate(self, context: HandoffContext) -> ReportResult:
        if not self.config.enabled:
            return ReportResult(path=None)
        return await asyncio.to_thread(self._write, context)

import asyncio
from pathlib import Path

import pytest

from conductor.config import ReportConfig
from conductor.hooks.report import (
    ReportError,
    WalkthroughReport,
    actual_flow,
    render_walkthrough,
)
from conductor.workflow.context import HandoffContext
from conductor.workflow.payload import BuildOutput, SecurityOutcome, TestOutcome
from conductor.workflow.roles import Role


def _finished_context() -> HandoffContext:
    context = HandoffContext(
        plan={"projectName": "Shop", "summary": "Online shop", "tasks": [{"title": "cart"}]},
        build_output=BuildOutput(changed_files=["cart.py"], run_command="make run"),
        test_outcome=TestOutcome(
            tests_passed=True, results=[{"scenario": "add to cart", "passed": True}]
        ),
        security_outcome=SecurityOutcome(
            security_passed=True,
            recommendation="approve",
            vulnerabilities=[{"severity": "low", "description": "verbose errors"}],
        ),
    )
    path = [
        Role.IDLE,
        Role.PLANNER,
        Role.BUILDER,
        Role.CODE_REVIEW,
        Role.BUILDER,
        Role.CODE_REVIEW,
        Role.COMPLETED,
    ]
    for source, target in zip(path, path[1:]):
        context.record_hop(source, target)
    context.record_failure(Role.CODE_REVIEW, "code review rejected")
    return context


def test_actual_flow_skips_idle_and_keeps_loops() -> None:
    assert actual_flow(_finished_context()) == [
        Role.PLANNER,
        Role.BUILDER,
        Role.CODE_REVIEW,
        Role.BUILDER,
        Role.CODE_REVIEW,
        Role.COMPLETED,
    ]


def test_walkthrough_contains_every_section() -> None:
    rendered = render_walkthrough(_finished_context(), ["test-login.png"])

    assert rendered.startswith("# Workflow Walkthrough")
    assert "```mermaid" in rendered
    assert 'A3["Builder"] --> A4["Code Review"]' in rendered
    assert "**Project:** Shop" in rendered
    assert "- cart" in rendered
    assert "- `cart.py`" in rendered
    assert "**Result:** PASSED" in rendered
    assert "- [pass] add to cart" in rendered
    assert "- [low] verbose errors" in rendered
    assert "[code_review] code review rejected" in rendered
    assert "![test-login.png](./test-login.png)" in rendered


def test_report_writes_file_and_collects_screenshots(tmp_path: Path) -> None:
    for name in ("test-login.png", "browser_2.WEBP", "logo.png", "notes-test.txt"):
        (tmp_path / name).write_bytes(b"x")
    report = WalkthroughReport(ReportConfig(output_dir=str(tmp_path)))

    result = asyncio.run(report.generate(_finished_context()))

    assert result.path == tmp_path / "walkthrough.md"
    assert result.screenshots == ["browser_2.WEBP", "test-login.png"]
    assert "## Screenshots" in result.path.read_text(encoding="utf-8")


def test_disabled_report_writes_nothing(tmp_path: Path) -> None:
    report = WalkthroughReport(ReportConfig(enabled=False, output_dir=str(tmp_path)))

    result = asyncio.run(report.generate(_finished_context()))

    assert result.path is None
    assert list(tmp_path.iterdir()) == []


def test_unwritable_target_raises_report_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied", encoding="utf-8")
    report = WalkthroughReport(ReportConfig(output_dir=str(blocker)))

    with pytest.raises(ReportError):
        asyncio.run(report.generate(_finished_context()))

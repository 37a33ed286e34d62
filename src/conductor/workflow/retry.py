from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from conductor.config import WorkflowConfig
from conductor.workflow.roles import Role

RetryCounter = Literal["test", "security", "design_review"]


@dataclass(slots=True, frozen=True)
class RetryBump:
    counter: RetryCounter
    count: int
    limit: int

    @property
    def exhausted(self) -> bool:
        return self.count >= self.limit


@dataclass(slots=True)
class RetryGuard:
    """Counts backward routings per gate so a rejection loop cannot spin forever."""

    max_test_retries: int = 3
    max_security_retries: int = 2
    max_design_review_retries: int = 3
    test_rejections: int = 0
    security_rejections: int = 0
    design_review_rejections: int = 0

    @classmethod
    def from_config(cls, config: WorkflowConfig) -> RetryGuard:
        return cls(
            max_test_retries=config.max_test_retries,
            max_security_retries=config.max_security_retries,
            max_design_review_retries=config.max_design_review_retries,
        )

    @staticmethod
    def counter_for(source: Role, target: Role) -> RetryCounter | None:
        if source in {Role.TESTER, Role.TEST_REVIEW} and target is Role.BUILDER:
            return "test"
        if source is Role.SECURITY_AUDIT and target in {Role.PLANNER, Role.BUILDER}:
            return "security"
        if source is Role.DESIGN_REVIEW and target is Role.DESIGNER:
            return "design_review"
        return None

    def register(self, source: Role, target: Role) -> RetryBump | None:
        """Count the routing ``source -> target`` if it is a guarded backward edge."""
        counter = self.counter_for(source, target)
        if counter == "test":
            self.test_rejections += 1
            return RetryBump(counter, self.test_rejections, self.max_test_retries)
        if counter == "security":
            self.security_rejections += 1
            return RetryBump(counter, self.security_rejections, self.max_security_retries)
        if counter == "design_review":
            self.design_review_rejections += 1
            return RetryBump(
                counter, self.design_review_rejections, self.max_design_review_retries
            )
        return None

    @property
    def design_review_exhausted(self) -> bool:
        return self.design_review_rejections >= self.max_design_review_retries

    def on_enter(self, role: Role) -> None:
        if role is Role.SECURITY_AUDIT:
            self.test_rejections = 0
        elif role is Role.COMPLETED:
            self.security_rejections = 0

    def reset_design_review(self) -> None:
        self.design_review_rejections = 0

    def reset_escalation(self) -> None:
        self.test_rejections = 0
        self.security_rejections = 0

    def reset_all(self) -> None:
        self.reset_escalation()
        self.reset_design_review()

    def snapshot(self) -> dict[str, Any]:
        return {
            "test_rejections": self.test_rejections,
            "security_rejections": self.security_rejections,
            "design_review_rejections": self.design_review_rejections,
        }

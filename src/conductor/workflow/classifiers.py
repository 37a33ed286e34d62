"""Free-text heuristics used by the decision function.

Routing never reads notes directly; it asks a :class:`NoteClassifier`. The keyword
strategy below is the default and can be swapped for a stricter or model-backed one.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

DESIGN_TERMS = (
    "designer",
    "ui design",
    "user interface",
    "mockup",
    "wireframe",
    "figma",
    "penpot",
    "design tool",
    "design canvas",
)

TEST_FAILURE_TERMS = (
    "critical issue",
    "failed",
    "error",
    "not working",
    "broken",
    "❌",
    "tests failed",
    "test failed",
    "failure",
)

TEST_SUCCESS_TERMS = (
    "all tests pass",
    "all tests passed",
    "tests passed",
)

REVIEW_FAILURE_TERMS = (
    "tests: failed",
    "test failed",
    "tests failed",
    "critical issue",
    "❌",
)

APPROVAL_TERMS = (
    "approved",
    "approve",
    "lgtm",
    "looks good",
    "design complete",
    "all elements present",
    "passed",
    "✅",
)

REJECTION_TERMS = (
    "not approved",
    "rejected",
    "reject",
    "incomplete",
    "missing",
    "needs revision",
    "failed",
)

UI_ELEMENT_TERMS = (
    "button",
    "input",
    "field",
    "text",
    "label",
    "title",
    "heading",
    "icon",
    "image",
    "avatar",
    "card",
    "list",
    "item",
    "nav",
    "header",
    "footer",
    "menu",
    "tab",
    "form",
    "link",
    "badge",
    "toggle",
    "checkbox",
    "dropdown",
    "modal",
)


class NoteClassifier(Protocol):
    def mentions_design(self, text: str) -> bool: ...

    def reports_test_failure(self, text: str) -> bool: ...

    def reports_review_failure(self, text: str) -> bool: ...

    def approval_signal(self, text: str) -> bool | None: ...

    def count_ui_elements(self, names: Iterable[str]) -> int: ...


def _contains_any(text: str, terms: Iterable[str]) -> bool:
    return any(term in text for term in terms)


@dataclass(slots=True, frozen=True)
class KeywordClassifier:
    design_terms: tuple[str, ...] = DESIGN_TERMS
    test_failure_terms: tuple[str, ...] = TEST_FAILURE_TERMS
    test_success_terms: tuple[str, ...] = TEST_SUCCESS_TERMS
    review_failure_terms: tuple[str, ...] = REVIEW_FAILURE_TERMS
    approval_terms: tuple[str, ...] = APPROVAL_TERMS
    rejection_terms: tuple[str, ...] = REJECTION_TERMS
    ui_element_terms: tuple[str, ...] = UI_ELEMENT_TERMS

    def mentions_design(self, text: str) -> bool:
        return _contains_any(text.lower(), self.design_terms)

    def reports_test_failure(self, text: str) -> bool:
        lowered = text.lower()
        if not _contains_any(lowered, self.test_failure_terms):
            return False
        return not _contains_any(lowered, self.test_success_terms)

    def reports_review_failure(self, text: str) -> bool:
        return _contains_any(text.lower(), self.review_failure_terms)

    def approval_signal(self, text: str) -> bool | None:
        lowered = text.lower()
        if not lowered.strip():
            return None
        # "not approved" contains "approved"; rejection wins
        if _contains_any(lowered, self.rejection_terms):
            return False
        if _contains_any(lowered, self.approval_terms):
            return True
        return None

    def count_ui_elements(self, names: Iterable[str]) -> int:
        pattern = re.compile(
            "|".join(re.escape(term) for term in self.ui_element_terms), re.IGNORECASE
        )
        return sum(1 for name in names if pattern.search(name))

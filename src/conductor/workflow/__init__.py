from conductor.workflow.classifiers import KeywordClassifier, NoteClassifier
from conductor.workflow.context import (
    FailureRecord,
    HandoffContext,
    RoleHop,
    context_from_dict,
    context_to_dict,
    create_handoff_context,
    handoff_summary,
    merge_payload,
)
from conductor.workflow.decisions import Decision, HandoffRefused, decide
from conductor.workflow.payload import (
    HandoffPayload,
    PayloadError,
    SpecTaskRef,
    parse_boolish,
    parse_handoff_payload,
)
from conductor.workflow.retry import RetryBump, RetryGuard
from conductor.workflow.roles import Role, coerce_role, display_name, mode_slug
from conductor.workflow.transitions import (
    TRANSITIONS,
    Transition,
    available_transitions,
    find_transition,
    validate_context,
)

__all__ = [
    "Decision",
    "FailureRecord",
    "HandoffContext",
    "HandoffPayload",
    "HandoffRefused",
    "KeywordClassifier",
    "NoteClassifier",
    "PayloadError",
    "RetryBump",
    "RetryGuard",
    "Role",
    "RoleHop",
    "SpecTaskRef",
    "TRANSITIONS",
    "Transition",
    "available_transitions",
    "coerce_role",
    "context_from_dict",
    "context_to_dict",
    "create_handoff_context",
    "decide",
    "display_name",
    "find_transition",
    "handoff_summary",
    "merge_payload",
    "mode_slug",
    "parse_boolish",
    "parse_handoff_payload",
    "validate_context",
]

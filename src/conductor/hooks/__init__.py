from conductor.hooks.base import (
    CompletionHook,
    CompletionNotice,
    EventBus,
    EventType,
    HookError,
    HumanGate,
    ModeSwitcher,
    NullModeSwitcher,
    WorkflowEvent,
    approve_all,
    deny_all,
)
from conductor.hooks.report import ReportError, ReportGenerator, ReportResult, WalkthroughReport

__all__ = [
    "CompletionHook",
    "CompletionNotice",
    "EventBus",
    "EventType",
    "HookError",
    "HumanGate",
    "ModeSwitcher",
    "NullModeSwitcher",
    "ReportError",
    "ReportGenerator",
    "ReportResult",
    "WalkthroughReport",
    "WorkflowEvent",
    "approve_all",
    "deny_all",
]

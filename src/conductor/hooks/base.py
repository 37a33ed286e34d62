from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from conductor.workflow.context import HandoffContext
from conductor.workflow.roles import Role


class HookError(RuntimeError):
    """Raised by a hook implementation that cannot do its job."""


class EventType(str, Enum):
    TRANSITION = "transition"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    ERROR = "error"
    RETRY = "retry"


@dataclass(slots=True)
class WorkflowEvent:
    type: EventType
    from_role: Role
    to_role: Role
    context: HandoffContext | None = None
    message: str = ""


EventListener = Callable[[WorkflowEvent], None]


class EventBus:
    """Synchronous fan-out of workflow events; a failing listener never stops the rest."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def add(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove(self, listener: EventListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            logger.debug("Listener {} was not registered", listener)

    def __len__(self) -> int:
        return len(self._listeners)

    def emit(self, event: WorkflowEvent) -> list[str]:
        errors: list[str] = []
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning("Workflow listener failed on {} event: {}", event.type.value, exc)
                errors.append(f"listener error: {exc}")
        return errors


class ModeSwitcher(ABC):
    @abstractmethod
    async def switch_active_role(self, role: Role, mode: str) -> None:
        """Point the host at ``mode``, the mode slug that serves ``role``."""


class NullModeSwitcher(ModeSwitcher):
    async def switch_active_role(self, role: Role, mode: str) -> None:
        return None


HumanGate = Callable[[str, HandoffContext], Awaitable[bool]]


async def deny_all(reason: str, context: HandoffContext) -> bool:
    logger.info("No human reviewer attached; denying continuation for {}: {}", context.id, reason)
    return False


def approve_all() -> HumanGate:
    async def gate(reason: str, context: HandoffContext) -> bool:
        logger.info("Auto-approving continuation for {}: {}", context.id, reason)
        return True

    return gate


@dataclass(slots=True, frozen=True)
class CompletionNotice:
    context_id: str
    spec_task_id: str | None
    parent_task_id: str | None
    success: bool


CompletionHook = Callable[[CompletionNotice], Awaitable[None]]

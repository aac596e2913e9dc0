from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

from lexer import DoumiError


EVENTS = frozenset(
    {
        "program_start",
        "before_node",
        "after_node",
        "on_error",
        "program_end",
    }
)

StepHandler = Callable[[Any, "StepContext"], None]


class HookError(DoumiError):
    """Raised for invalid hook registrations."""


@dataclass(frozen=True)
class StepContext:
    """What a step rule sees: the node about to run and where it runs."""

    step_index: int
    rule: str
    block: str
    depth: int
    acc: int
    location: Any  # SourceLocation | None


@dataclass
class HookRegistry:
    # event -> [(priority, handler)], highest priority first
    _events: Dict[str, List[Tuple[int, Callable[..., None]]]] = field(default_factory=dict)
    _step_rules: List[Tuple[int, StepHandler]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0) -> None:
        if event not in EVENTS:
            raise HookError(f"Unknown event '{event}'; expected one of {', '.join(sorted(EVENTS))}")
        handlers = self._events.setdefault(event, [])
        handlers.append((priority, handler))
        # stable sort keeps registration order among equal priorities
        handlers.sort(key=lambda item: -item[0])

    def emit(self, event: str, *args: Any) -> None:
        for _priority, handler in self._events.get(event, ()):
            handler(*args)

    def add_step_rule(self, every_n: int, handler: StepHandler) -> None:
        if every_n <= 0:
            raise HookError("every_n must be >= 1")
        self._step_rules.append((every_n, handler))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)

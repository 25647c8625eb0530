import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .schemas import PlanStep, UiElement


@dataclass
class ActuatorCommand:
    action: str
    url: Optional[str] = None
    selector: Optional[str] = None
    value: Optional[str] = None


@dataclass
class Observation:
    url: Optional[str] = None
    title: Optional[str] = None
    dom_text: str = ""
    html: str = ""
    screenshot: Optional[bytes] = None
    cursor: Optional[Dict[str, int]] = None
    viewport: Optional[Dict[str, int]] = None
    logs: List[Dict[str, str]] = field(default_factory=list)
    # Empty when the actuator cannot list controls; callers fall back to parsing html.
    inventory: List[UiElement] = field(default_factory=list)


class Actuator(Protocol):
    # Asset name of the session video, set by close() when one was saved.
    recording: Optional[str]

    async def start(self) -> None: ...

    async def perform(self, command: ActuatorCommand) -> None: ...

    async def observe(self) -> Observation: ...

    async def close(self) -> None: ...


def command_for_step(step: PlanStep) -> ActuatorCommand:
    action = step.action
    if action is None:
        action = "goto" if step.url else "snapshot"
    return ActuatorCommand(action=action, url=step.url, selector=step.selector, value=step.value)


class BrowserSession:
    """A started actuator plus the lock that serializes steps and operator controls on it."""

    def __init__(self, actuator: Any):
        self.actuator = actuator
        self.lock = asyncio.Lock()
        self.started = False

    async def ensure_started(self) -> None:
        if not self.started:
            await self.actuator.start()
            self.started = True

    async def close(self) -> None:
        if self.started:
            self.started = False
            await self.actuator.close()

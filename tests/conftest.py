"""Shared fixtures: scripted provider, event recorder, file board on tmp_path."""

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from automode import (
    ActivityEvent,
    AutoModeOrchestrator,
    AutoModeSettings,
    EventBus,
    ExecutionStateStore,
    FileFeatureBoard,
    ProviderMessage,
)


def text(content: str) -> ProviderMessage:
    return ProviderMessage(type="text", text=content)


def tool(name: str, **tool_input) -> ProviderMessage:
    return ProviderMessage(type="tool_use", tool=name, tool_input=tool_input)


def result() -> ProviderMessage:
    return ProviderMessage(type="result", cost_usd=0.01, duration_ms=10)


def provider_error(message: str) -> ProviderMessage:
    return ProviderMessage(type="error", text=message, is_error=True)


def default_script(prompt: str) -> list:
    if "## Verification Pass" in prompt:
        return [text("All checks green.\n[VERIFICATION_PASSED]")]
    return [text("Done."), result()]


class ScriptedProvider:
    """
    Provider fake. Each call consumes the next script.

    A script item is a ProviderMessage (yielded), an asyncio.Event (awaited)
    or an exception (raised). Without scripts left, default_script is used.
    """

    def __init__(self, *scripts, default: Callable[[str], list] = default_script):
        self.scripts = list(scripts)
        self.default = default
        self.prompts: list[str] = []
        self.models: list[str | None] = []

    async def execute_query(self, prompt, *, model, cwd, token, system_prompt=None):
        self.prompts.append(prompt)
        self.models.append(model)
        script = self.scripts.pop(0) if self.scripts else self.default(prompt)
        for item in script:
            token.raise_if_cancelled()
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if isinstance(item, BaseException):
                raise item
            yield item
            await asyncio.sleep(0)


class EventRecorder:
    """Collects every event emitted on the bus."""

    def __init__(self, bus: EventBus):
        self.events: list[ActivityEvent] = []
        bus.subscribe(self.events.append)

    def types(self, feature_id: str | None = None) -> list[str]:
        return [e.type for e in self.events if feature_id is None or e.feature_id == feature_id]

    def of(self, event_type: str) -> list[dict]:
        return [e.to_dict() for e in self.events if e.type == event_type]


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def recorder(events: EventBus) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture()
def board() -> FileFeatureBoard:
    return FileFeatureBoard()


@pytest.fixture()
def project(tmp_path: Path) -> str:
    path = tmp_path / "project"
    path.mkdir()
    return str(path)


@pytest.fixture()
def settings(tmp_path: Path) -> AutoModeSettings:
    return AutoModeSettings(
        data_dir=tmp_path / "data",
        poll_interval=0.01,
        idle_interval=0.02,
        phase_timeout=5.0,
        approval_timeout=5.0,
    )


@pytest.fixture()
def make_orchestrator(events, board, settings):
    """Factory so tests can pick their own provider."""

    def factory(provider=None, **overrides) -> AutoModeOrchestrator:
        config = settings
        for key, value in overrides.items():
            setattr(config, key, value)
        return AutoModeOrchestrator(
            events=events,
            board=board,
            provider=provider or ScriptedProvider(),
            settings=config,
            state_store=ExecutionStateStore(config.state_file),
        )

    return factory

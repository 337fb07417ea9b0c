from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from operator_browser import TaskResult, live_view_url
from operator_config import OperatorSettings
from operator_context import OperatorContext
from operator_models import AgentStep, message_step

PNG_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="


def make_settings(**overrides: Any) -> OperatorSettings:
    values: dict[str, Any] = {
        "browserbase_api_key": "bb-key",
        "browserbase_project_id": "proj-1",
        "model": "claude-3-7-sonnet-20250219",
        "provider": "anthropic",
        "provider_api_key": "sk-ant",
        "slack_bot_token": "xoxb-token",
        "slack_bot_user_id": "UBOT",
    }
    values.update(overrides)
    return OperatorSettings(**values)


class FakeTaskAgent:
    """Stands in for BrowserTaskAgent; replies with queued messages (or raises queued exceptions)."""

    def __init__(self, replies: list[Any] | None = None):
        self.replies = list(replies or ["done"])
        self.calls: list[dict[str, Any]] = []

    async def execute(self, instruction, history=None, previous_response_id=None) -> TaskResult:
        self.calls.append(
            {
                "instruction": instruction,
                "history": list(history) if history is not None else None,
                "previous_response_id": previous_response_id,
            }
        )
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return TaskResult(message=reply, completed=True, steps=1)


class FakeBrowser:
    def __init__(self, session_id: str = "sess-1", task_agent: FakeTaskAgent | None = None, **_: Any):
        self.session_id = session_id
        self.task_agent = task_agent or FakeTaskAgent()
        self.init_calls = 0
        self.visited: list[str] = []
        self.back_calls = 0
        self.screenshots = 0
        self.closed = False
        self.fail_goto: Exception | None = None

    @property
    def live_url(self) -> str:
        return live_view_url(self.session_id)

    @property
    def current_url(self) -> str | None:
        return self.visited[-1] if self.visited else None

    async def init(self):
        self.init_calls += 1
        return self

    async def goto(self, url: str) -> None:
        if self.fail_goto is not None:
            raise self.fail_goto
        self.visited.append(url)

    async def back(self) -> None:
        self.back_calls += 1

    async def screenshot(self) -> str:
        self.screenshots += 1
        return PNG_B64

    def get_agent(self, **options: Any) -> FakeTaskAgent:
        return self.task_agent

    async def close(self) -> None:
        self.closed = True


class ScriptedActionClient:
    """Conversation client double returning pre-built steps and recording each request."""

    def __init__(self, steps: list[AgentStep]):
        self.steps = list(steps)
        self.requests: list[tuple[list[Any], str | None]] = []

    async def get_action(self, input_items, previous_response_id=None) -> AgentStep:
        self.requests.append((list(input_items), previous_response_id))
        if self.steps:
            return self.steps.pop(0)
        return message_step("out of script")


class FakeStore:
    def __init__(self, state=None, fail: bool = False):
        self.state = state
        self.fail = fail
        self.saved: list[tuple[str, Any]] = []

    @property
    def is_configured(self) -> bool:
        return True

    async def save_state(self, session_id, state) -> str:
        if self.fail:
            raise RuntimeError("bucket unavailable")
        self.saved.append((session_id, state))
        self.state = state
        return f"agent-{session_id}-state-1.json"

    async def get_state(self, session_id):
        return self.state


class FakeObserver:
    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    async def started(self, live_url: str) -> None:
        self.events.append(("started", live_url))

    async def post_message(self, text: str, live_url: str) -> None:
        self.events.append(("message", text))

    async def post_screenshot(self, png_base64: str, title: str | None = None) -> None:
        self.events.append(("screenshot", title))


def make_browserbase(session_id: str = "sess-1", existing: list[Any] | None = None) -> MagicMock:
    browserbase = MagicMock()
    browserbase.sessions.create = AsyncMock(
        return_value=SimpleNamespace(id=session_id, connect_url="wss://connect.example/abc", status="RUNNING")
    )
    browserbase.sessions.retrieve = AsyncMock(
        return_value=SimpleNamespace(id=session_id, connect_url="wss://connect.example/abc", status="RUNNING")
    )
    browserbase.sessions.update = AsyncMock(return_value=None)
    browserbase.sessions.list = AsyncMock(return_value=list(existing or []))
    browserbase.sessions.debug = AsyncMock(
        return_value=SimpleNamespace(
            debugger_url="https://debug.example/raw",
            debugger_fullscreen_url="https://debug.example/full",
        )
    )
    return browserbase


async def starting_url(goal: str) -> str:
    return "https://www.example.com"


@pytest.fixture
def settings() -> OperatorSettings:
    return make_settings()


@pytest.fixture
def task_agent() -> FakeTaskAgent:
    return FakeTaskAgent()


@pytest.fixture
def context(settings, task_agent) -> OperatorContext:
    slack = MagicMock()
    slack.chat_postMessage = AsyncMock(return_value={"ok": True})
    slack.files_upload_v2 = AsyncMock(return_value={"ok": True})
    slack.users_info = AsyncMock(return_value={"ok": True, "user": {"tz": "Europe/Berlin"}})
    browsers: list[FakeBrowser] = []

    def browser_factory(browserbase, settings, *, session_id=None, region=None):
        browser = FakeBrowser(session_id or "sess-1", task_agent=task_agent)
        browsers.append(browser)
        return browser

    ctx = OperatorContext(
        settings=settings,
        browserbase=make_browserbase(),
        store=FakeStore(),
        slack=slack,
        browser_factory=browser_factory,
        url_selector=starting_url,
        budget_seconds=5,
    )
    ctx.browsers = browsers  # type: ignore[attr-defined]
    return ctx

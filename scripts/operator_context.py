"""Process-wide clients, built once at startup and handed to the transports."""

import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from operator_agent import BrowserOperatorAgent
from operator_browser import RemoteBrowser
from operator_config import OperatorSettings, invocation_budget_seconds
from operator_loop import AgentLoop, LoopObserver, SessionLocks, select_starting_url
from operator_regions import DEFAULT_REGION, Region
from operator_state import SessionStateStore


@dataclass
class OperatorContext:
    settings: OperatorSettings
    browserbase: Any
    store: SessionStateStore
    slack: Optional[Any] = None
    locks: SessionLocks = field(default_factory=SessionLocks)
    browser_factory: Callable[..., RemoteBrowser] = RemoteBrowser
    url_selector: Optional[Callable[[str], Awaitable[str]]] = None
    budget_seconds: float = field(default_factory=invocation_budget_seconds)

    def new_browser(self, session_id: Optional[str], region: Region = DEFAULT_REGION) -> RemoteBrowser:
        return self.browser_factory(self.browserbase, self.settings, session_id=session_id, region=region)

    def new_agent(self, browser: RemoteBrowser) -> BrowserOperatorAgent:
        return BrowserOperatorAgent(browser, model=self.settings.model, provider=self.settings.provider)

    def new_loop(
        self,
        browser: RemoteBrowser,
        agent: BrowserOperatorAgent,
        *,
        session_id: str,
        observer: Optional[LoopObserver] = None,
    ) -> AgentLoop:
        selector = self.url_selector or functools.partial(
            select_starting_url, api_key=self.settings.openai_api_key
        )
        return AgentLoop(
            browser,
            agent,
            self.store,
            session_id=session_id,
            observer=observer,
            url_selector=selector,
        )


def build_context(settings: OperatorSettings) -> OperatorContext:
    from browserbase import AsyncBrowserbase

    slack = None
    if settings.slack_configured:
        from slack_sdk.web.async_client import AsyncWebClient

        slack = AsyncWebClient(token=settings.slack_bot_token)

    return OperatorContext(
        settings=settings,
        browserbase=AsyncBrowserbase(api_key=settings.browserbase_api_key),
        store=SessionStateStore(
            settings.state_bucket,
            prefix=settings.state_prefix,
            region_name=settings.aws_region,
        ),
        slack=slack,
    )

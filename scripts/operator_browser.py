"""
Remote browser session handle.

One ``RemoteBrowser`` owns one Browserbase session: it creates it (or attaches
to an existing id), opens a playwright CDP connection for navigation and
screenshots, and binds a browser-use ``BrowserSession`` to the same CDP URL
for the LLM-driven agent.
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from operator_config import (
    AGENT_MAX_STEPS,
    CDP_CONNECT_TIMEOUT_MS,
    DEFAULT_AGENT_MODEL,
    DEFAULT_AGENT_PROVIDER,
    DEFAULT_SEARCH_URL,
    LIVE_VIEW_BASE_URL,
    SESSION_TIMEOUT_SECONDS,
    VIEWPORT_HEIGHT,
    VIEWPORT_WIDTH,
    OperatorSettings,
)
from operator_errors import BrowserNotInitializedError, BrowserSessionTerminatedError
from operator_llm import create_llm
from operator_models import ChatTurn
from operator_regions import DEFAULT_REGION, Region

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = """You are a helpful assistant that can use a web browser to complete tasks and answer questions.

Follow these guidelines:
1. Be concise and action-oriented in your approach.
2. When searching, use specific search terms.
3. Don't ask for permission or confirmation before taking actions.
4. Extract requested information clearly and accurately.
5. For follow-up questions, continue the conversation using what you have already seen or found.
6. Use the web browser to look up any new information needed for follow-up questions.
7. If you need information only the user can give (a code, a choice, a confirmation), finish with a short question."""


def ensure_url(url: str) -> str:
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url


def live_view_url(session_id: str) -> str:
    return f"{LIVE_VIEW_BASE_URL}/{session_id}"


def thread_key(ts: Optional[str]) -> str:
    """Slack timestamps as stored in session metadata (punctuation stripped)."""
    return re.sub(r"[^\w\s-]", "", ts or "")


# ─── Session lifecycle ──────────────────────────────────────────────────────────

async def create_remote_session(
    browserbase,
    settings: OperatorSettings,
    *,
    region: Region = DEFAULT_REGION,
    user_metadata: Optional[dict[str, str]] = None,
    proxy: bool = False,
    width: int = VIEWPORT_WIDTH,
    height: int = VIEWPORT_HEIGHT,
):
    """Create a keep-alive Browserbase session."""
    params: dict[str, Any] = {
        "project_id": settings.browserbase_project_id,
        "keep_alive": True,
        "proxies": proxy,
        "region": Region(region).value,
        "browser_settings": {
            "block_ads": True,
            "viewport": {"width": width, "height": height},
        },
        "timeout": SESSION_TIMEOUT_SECONDS,
    }
    if user_metadata:
        params["user_metadata"] = user_metadata

    session = await browserbase.sessions.create(**params)
    logger.info(f"Created new Browserbase session {session.id} in {params['region']}")
    return session


async def release_remote_session(browserbase, settings: OperatorSettings, session_id: str) -> None:
    await browserbase.sessions.update(
        session_id,
        project_id=settings.browserbase_project_id,
        status="REQUEST_RELEASE",
    )
    logger.info(f"Requested release of Browserbase session {session_id}")


async def find_sessions_for_thread(browserbase, thread_ts: str) -> list:
    query = f"user_metadata['messageTs']:'{thread_key(thread_ts)}'"
    return list(await browserbase.sessions.list(q=query))


async def session_debug_url(browserbase, session_id: str) -> str:
    debug = await browserbase.sessions.debug(session_id)
    return debug.debugger_fullscreen_url or debug.debugger_url


def _connect_url(session) -> Optional[str]:
    return getattr(session, "connect_url", None) or getattr(session, "connectUrl", None)


# ─── Browser-use agent ──────────────────────────────────────────────────────────

@dataclass
class TaskResult:
    message: str
    completed: bool
    steps: int = 0


def _history_context(history: Optional[list[ChatTurn]]) -> str:
    if not history:
        return ""
    lines = [f"{turn.role}: {(turn.text() or '')[:500]}" for turn in history]
    return "\n\n## CONVERSATION SO FAR\n" + "\n".join(lines)


class BrowserTaskAgent:
    """LLM-bound browser-use agent. The first call starts a task; later calls add follow-ups."""

    def __init__(self, llm, browser_session, *, instructions: str, max_steps: int = AGENT_MAX_STEPS):
        self.llm = llm
        self.browser_session = browser_session
        self.instructions = instructions
        self.max_steps = max_steps
        self._agent = None

    async def execute(
        self,
        instruction: str,
        history: Optional[list[ChatTurn]] = None,
        previous_response_id: Optional[str] = None,
    ) -> TaskResult:
        from browser_use import Agent

        if self._agent is None:
            self._agent = Agent(
                task=instruction,
                llm=self.llm,
                browser_session=self.browser_session,
                extend_system_message=self.instructions + _history_context(history),
                use_vision=True,
                max_actions_per_step=1,
                generate_gif=False,
            )
        else:
            logger.info(f"Adding follow-up task (after {previous_response_id}): {instruction[:80]}")
            self._agent.add_new_task(instruction)

        result = await self._agent.run(max_steps=self.max_steps)

        message = result.final_result() if result else None
        if not message:
            errors = [e for e in (result.errors() if result else []) if e]
            message = (
                f"I could not finish the task: {errors[-1]}"
                if errors
                else "I could not finish the task within the step limit."
            )
        return TaskResult(
            message=str(message),
            completed=bool(result and result.is_done()),
            steps=len(result.history) if result else 0,
        )


# ─── Remote browser ─────────────────────────────────────────────────────────────

class RemoteBrowser:
    def __init__(
        self,
        browserbase,
        settings: OperatorSettings,
        *,
        session_id: Optional[str] = None,
        width: int = VIEWPORT_WIDTH,
        height: int = VIEWPORT_HEIGHT,
        region: Region = DEFAULT_REGION,
        proxy: bool = False,
        llm_factory: Optional[Callable[[str, str], Any]] = None,
    ):
        self.browserbase = browserbase
        self.settings = settings
        self.dimensions = (width, height)
        self.region = Region(region)
        self.proxy = proxy
        self.session_id = session_id
        self._attach = session_id is not None
        self._llm_factory = llm_factory or self._default_llm
        self._playwright = None
        self._browser = None
        self._browser_session = None
        self._agents: dict[tuple, BrowserTaskAgent] = {}
        self.page = None

    @property
    def initialized(self) -> bool:
        return self.page is not None

    @property
    def live_url(self) -> str:
        return live_view_url(self.session_id or "")

    @property
    def current_url(self) -> Optional[str]:
        url = getattr(self.page, "url", None)
        return url if isinstance(url, str) else None

    def _default_llm(self, model: str, provider: str):
        return create_llm(model, provider, self.settings.provider_api_key)

    async def _resolve_session(self):
        if self._attach:
            logger.info(f"Connecting to existing Browserbase session: {self.session_id}")
            return await self.browserbase.sessions.retrieve(self.session_id)
        width, height = self.dimensions
        return await create_remote_session(
            self.browserbase,
            self.settings,
            region=self.region,
            proxy=self.proxy,
            width=width,
            height=height,
        )

    async def init(self) -> "RemoteBrowser":
        if self.initialized:
            logger.debug("Remote browser already initialized, returning existing instance")
            return self

        logger.info(f"Initializing remote browser (session: {self.session_id or 'new session'})")
        session = await self._resolve_session()
        self.session_id = session.id

        connect_url = _connect_url(session)
        if not connect_url:
            raise BrowserSessionTerminatedError(session.id)

        from browser_use import BrowserSession
        from playwright.async_api import async_playwright

        logger.info(f"Connecting via CDP: {connect_url[:50]}...")
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.connect_over_cdp(
                connect_url, timeout=CDP_CONNECT_TIMEOUT_MS
            )
            context = self._browser.contexts[0] if self._browser.contexts else await self._browser.new_context()
            page = context.pages[0] if context.pages else await context.new_page()
            self._browser_session = BrowserSession(cdp_url=connect_url, keep_alive=True)
        except Exception:
            await self.close()
            raise

        self.page = page
        if not self._attach:
            logger.info(f"Navigating new session to {DEFAULT_SEARCH_URL}")
            await self.page.goto(DEFAULT_SEARCH_URL)
        return self

    def _require_page(self, operation: str):
        if self.page is None:
            raise BrowserNotInitializedError(operation)
        return self.page

    async def goto(self, url: str) -> None:
        page = self._require_page("goto")
        await page.goto(ensure_url(url))

    async def back(self) -> None:
        page = self._require_page("back")
        await page.go_back()

    async def screenshot(self) -> str:
        """Base64-encoded PNG of the current page."""
        page = self._require_page("screenshot")
        png_data = await page.screenshot(type="png")
        return base64.b64encode(png_data).decode("ascii")

    def get_agent(
        self,
        *,
        model: str = DEFAULT_AGENT_MODEL,
        provider: str = DEFAULT_AGENT_PROVIDER,
        instructions: Optional[str] = None,
    ) -> BrowserTaskAgent:
        if self._browser_session is None:
            raise BrowserNotInitializedError("get_agent")

        key = (model, provider, instructions or DEFAULT_INSTRUCTIONS)
        agent = self._agents.get(key)
        if agent is None:
            logger.info(f"Initializing browser agent with model: {model} and provider: {provider}")
            agent = BrowserTaskAgent(
                self._llm_factory(model, provider),
                self._browser_session,
                instructions=key[2],
            )
            self._agents[key] = agent
        return agent

    async def close(self) -> None:
        """Drop local CDP connections. The remote session stays alive until released."""
        if self._browser_session is not None:
            try:
                await self._browser_session.stop()
            except Exception as e:
                logger.warning(f"Error stopping browser-use session: {e}")
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.warning(f"Error closing CDP connection: {e}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
        self._browser_session = None
        self._browser = None
        self._playwright = None
        self._agents.clear()
        self.page = None

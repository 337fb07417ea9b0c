"""
Agent loop controller.

Drives one invocation of the operator against one remote session:

    STARTING ──> AWAITING_ACTION ──> EXECUTING ──> AWAITING_ACTION ──> ... ──> MESSAGE_EMITTED
    RESUMING_WITH_REPLY ──> MESSAGE_EMITTED | AWAITING_ACTION

The loop is strictly sequential: every pending call in a step is answered by
exactly one correlated output before the next generation request. A step that
carries a user-visible message ends the invocation after its state has been
persisted and the message delivered.
"""

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import BaseModel

from operator_agent import BrowserOperatorAgent
from operator_browser import RemoteBrowser, live_view_url
from operator_config import DEFAULT_SEARCH_URL, STARTING_URL_MODEL, STARTING_URL_TIMEOUT_SECONDS
from operator_errors import ActionExecutionError, InvocationTimeoutError
from operator_llm import create_llm
from operator_models import (
    AgentState,
    AgentStep,
    CallOutput,
    ChatTurn,
    ComputerCall,
    ComputerCallOutput,
    FunctionCall,
    FunctionCallOutput,
    ImageOutput,
)
from operator_state import SessionStateStore

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "Task completed."


class LoopState(str, Enum):
    STARTING = "starting"
    RESUMING_WITH_REPLY = "resuming_with_reply"
    AWAITING_ACTION = "awaiting_action"
    EXECUTING = "executing"
    MESSAGE_EMITTED = "message_emitted"


class LoopObserver(Protocol):
    async def started(self, live_url: str) -> None: ...

    async def post_message(self, text: str, live_url: str) -> None: ...

    async def post_screenshot(self, png_base64: str, title: Optional[str] = None) -> None: ...


# ─── Starting URL ───────────────────────────────────────────────────────────────

class StartingUrl(BaseModel):
    url: str
    reasoning: str = ""


def _starting_url_prompt(goal: str) -> str:
    return (
        f'Given the goal: "{goal}", determine the best URL to start from.\n'
        "Choose from:\n"
        "1. A relevant search engine (Google, Bing, etc.)\n"
        "2. A direct URL if you're confident about the target website\n"
        "3. Any other appropriate starting point\n\n"
        "Return a URL that would be most effective for achieving this goal."
    )


async def select_starting_url(
    goal: str,
    *,
    llm=None,
    api_key: Optional[str] = None,
    timeout: float = STARTING_URL_TIMEOUT_SECONDS,
) -> str:
    """Ask a fast model for a starting URL; fall back to the default search engine."""
    try:
        from browser_use.llm.messages import UserMessage

        if llm is None:
            llm = create_llm(STARTING_URL_MODEL, "openai", api_key)
        response = await asyncio.wait_for(
            llm.ainvoke([UserMessage(content=_starting_url_prompt(goal))], output_format=StartingUrl),
            timeout=timeout,
        )
        choice = response.completion
        if not isinstance(choice, StartingUrl):
            choice = StartingUrl.model_validate(choice)
        url = choice.url.strip()
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"not an http(s) URL: {url!r}")
    except Exception as e:
        logger.warning(f"Starting URL selection failed ({e!r}), falling back to {DEFAULT_SEARCH_URL}")
        return DEFAULT_SEARCH_URL

    logger.info(f"Starting URL: {url} ({choice.reasoning[:100]})")
    return url


# ─── Deadline & per-session locks ───────────────────────────────────────────────

async def run_with_deadline(
    awaitable: Awaitable[Any],
    seconds: float,
    *,
    on_timeout: Optional[Callable[[], Awaitable[None]]] = None,
    session_id: Optional[str] = None,
) -> Any:
    """Await ``awaitable`` for at most ``seconds``.

    On expiry the work is cancelled (the cancellation reaches whatever remote
    call it is suspended in), ``on_timeout`` is given a chance to notify the
    user, and InvocationTimeoutError is raised.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        logger.warning(f"Invocation for session {session_id} timed out after {seconds:.0f}s")
        if on_timeout is not None:
            try:
                await on_timeout()
            except Exception as notify_error:
                logger.error(f"Failed to deliver timeout notice: {notify_error}")
        raise InvocationTimeoutError(seconds, session_id) from e


class SessionLocks:
    """One asyncio.Lock per session id, so invocations on a session run one at a time.

    A session's entry lives only while someone holds or waits for its lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, session_id: str):
        key = session_id.strip().lower()
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]


# ─── Loop ───────────────────────────────────────────────────────────────────────

class AgentLoop:
    def __init__(
        self,
        browser: RemoteBrowser,
        agent: BrowserOperatorAgent,
        store: SessionStateStore,
        *,
        session_id: str,
        observer: Optional[LoopObserver] = None,
        url_selector: Callable[[str], Awaitable[str]] = select_starting_url,
    ):
        self.browser = browser
        self.agent = agent
        self.store = store
        self.session_id = session_id
        self.observer = observer
        self.url_selector = url_selector
        self.state = LoopState.STARTING

    @property
    def live_url(self) -> str:
        return live_view_url(self.session_id)

    def _transition(self, state: LoopState) -> None:
        logger.info(f"[{self.session_id}] {self.state.value} -> {state.value}")
        self.state = state

    async def run(
        self,
        goal: str,
        *,
        saved_state: Optional[AgentState] = None,
        user_response: Optional[str] = None,
    ) -> str:
        """Run until a step carries a message.

        Returns the message text when there is no observer, otherwise
        COMPLETION_MARKER (the observer already has the message).
        """
        if saved_state is None:
            step = await self._start(goal)
        else:
            step = saved_state.current_step
            if user_response:
                step = await self._resume(step, user_response)

        # a saved step without a reply was already delivered; only act on its calls
        fresh = saved_state is None or bool(user_response)
        while True:
            text = step.message_text() if fresh else None
            if text:
                return await self._emit(goal, step, text)
            fresh = True

            self._transition(LoopState.EXECUTING)
            outputs = await self.execute(step)

            self._transition(LoopState.AWAITING_ACTION)
            logger.info(f"Generating next action with {len(outputs)} input items...")
            step = await self.agent.get_action(outputs, step.response_id)

    async def _start(self, goal: str) -> AgentStep:
        self.state = LoopState.STARTING
        logger.info(f"[{self.session_id}] starting: {goal[:100]}")
        if self.observer is not None:
            await self.observer.started(self.live_url)
        else:
            logger.info(f"🤖 Browser Operator: Starting up to complete the task! Follow along at {self.live_url}")

        await self.browser.init()
        try:
            starting_url = await self.url_selector(goal)
        except Exception as e:
            logger.warning(f"Starting URL selector raised ({e!r}), using {DEFAULT_SEARCH_URL}")
            starting_url = DEFAULT_SEARCH_URL
        await self.browser.goto(starting_url)

        step = await self.agent.get_action([ChatTurn(role="user", content=goal)], None)
        self._transition(LoopState.AWAITING_ACTION)
        return step

    async def _resume(self, step: AgentStep, user_response: str) -> AgentStep:
        self._transition(LoopState.RESUMING_WITH_REPLY)
        prior_message = step.message_text() or ""
        return await self.agent.get_action(
            [
                ChatTurn(role="assistant", content=prior_message),
                ChatTurn(role="user", content=user_response),
            ],
            step.response_id,
        )

    async def execute(self, step: AgentStep) -> list[CallOutput]:
        """Dispatch every pending call in ``step``; one output per call, in order."""
        await self.browser.init()

        outputs: list[CallOutput] = []
        for call in step.pending_calls():
            try:
                if isinstance(call, FunctionCall):
                    outputs.append(await self._take_function_action(call))
                else:
                    outputs.append(await self._take_computer_action(call))
            except Exception as e:
                logger.error(f"Error executing {call.name} ({call.call_id}): {e}")
                raise ActionExecutionError(call.call_id, call.name, str(e) or type(e).__name__) from e
        return outputs

    async def _take_function_action(self, call: FunctionCall) -> FunctionCallOutput:
        args = call.parsed_arguments()
        logger.info(f"{call.name}({args})")

        if call.name == "goto" and args.get("url"):
            await self.browser.goto(args["url"])
        elif call.name == "back":
            await self.browser.back()
        else:
            logger.info(f"No browser handler for {call.name}, acknowledging")

        return FunctionCallOutput(call_id=call.call_id, output="success")

    async def _take_computer_action(self, call: ComputerCall) -> ComputerCallOutput:
        logger.info(f"Executing {call.name} action...")
        screenshot = await self.browser.screenshot()
        await self._forward_screenshot(screenshot, title="Current Browser View")
        return ComputerCallOutput(
            call_id=call.call_id,
            output=ImageOutput(image_url=f"data:image/png;base64,{screenshot}"),
            current_url=self.browser.current_url,
        )

    async def _forward_screenshot(self, screenshot: str, title: Optional[str] = None) -> None:
        if self.observer is None:
            return
        try:
            await self.observer.post_screenshot(screenshot, title)
        except Exception as e:
            logger.warning(f"Could not forward screenshot: {e}")

    async def _persist(self, goal: str, step: AgentStep) -> None:
        try:
            await self.store.save_state(self.session_id, AgentState(goal=goal, current_step=step))
        except Exception as e:
            logger.warning(f"Could not save state, but continuing: {e}")

    async def _emit(self, goal: str, step: AgentStep, text: str) -> str:
        self._transition(LoopState.MESSAGE_EMITTED)
        await self._persist(goal, step)

        if self.observer is None:
            logger.info(f"💬 Message: {text}")
            return text

        try:
            screenshot = await self.browser.screenshot()
        except Exception as e:
            logger.warning(f"Could not capture screenshot for message: {e}")
        else:
            await self._forward_screenshot(screenshot)
        await self.observer.post_message(text, self.live_url)
        return COMPLETION_MARKER

"""
Conversation/action client.

Turns a loosely-shaped run of historical items (chat turns, structured
messages, tool outputs) into a flat role/content history, then asks the
browser agent for the next action. ``get_action`` never raises: a failure
comes back as a message step whose text describes the error, so the loop can
surface it to the user.
"""

import json
import logging
from functools import singledispatch
from typing import Any, Iterable, Optional

from operator_browser import RemoteBrowser
from operator_config import DEFAULT_AGENT_MODEL, DEFAULT_AGENT_PROVIDER
from operator_models import (
    AgentStep,
    ChatTurn,
    ComputerCall,
    ComputerCallOutput,
    FunctionCall,
    FunctionCallOutput,
    ImageOutput,
    MessageAction,
    message_step,
    parse_input_items,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST = "Explore the current page"
AGENT_INSTRUCTIONS = (
    "Use the web browser to complete the task. Navigate websites and extract information as needed."
)
SCREENSHOT_NOTE = "I took a screenshot of the current page state."


# ─── Normalization ──────────────────────────────────────────────────────────────

@singledispatch
def _normalize(item: Any) -> list[ChatTurn]:
    raise TypeError(f"Unsupported history item: {type(item).__name__}")


@_normalize.register
def _(item: ChatTurn) -> list[ChatTurn]:
    if isinstance(item.content, str):
        return [item]
    text = item.text()
    return [ChatTurn(role=item.role, content=text)] if text else []


@_normalize.register
def _(item: MessageAction) -> list[ChatTurn]:
    text = item.text()
    if not text:
        return []
    return [ChatTurn(role=item.role or "assistant", content=text)]


@_normalize.register(ComputerCallOutput)
@_normalize.register(FunctionCallOutput)
def _(item) -> list[ChatTurn]:
    if isinstance(item.output, ImageOutput):
        # keep the model aware an action happened without replaying image payloads
        return [ChatTurn(role="system", content=SCREENSHOT_NOTE)]
    if not item.output:
        return []
    return [ChatTurn(role="system", content=f"Tool execution result: {json.dumps(item.output)}")]


@_normalize.register(FunctionCall)
@_normalize.register(ComputerCall)
def _(item) -> list[ChatTurn]:
    return []


def normalize_items(items: Iterable[Any]) -> list[ChatTurn]:
    """Flatten input items into role/content turns, in order."""
    history: list[ChatTurn] = []
    for item in parse_input_items(list(items)):
        history.extend(_normalize(item))
    return history


def current_request(items: Iterable[Any]) -> str:
    """Text of the most recent user-authored item, or a generic exploration request."""
    for item in reversed(parse_input_items(list(items))):
        if isinstance(item, (ChatTurn, MessageAction)) and item.role == "user":
            text = item.text()
            if text:
                return text
            break
    return DEFAULT_REQUEST


# ─── Client ─────────────────────────────────────────────────────────────────────

class BrowserOperatorAgent:
    def __init__(
        self,
        browser: RemoteBrowser,
        *,
        model: str = DEFAULT_AGENT_MODEL,
        provider: str = DEFAULT_AGENT_PROVIDER,
        print_steps: bool = False,
    ):
        self.browser = browser
        self.model = model
        self.provider = provider
        self.print_steps = print_steps
        self.history: list[ChatTurn] = []
        self.last_response_id: Optional[str] = None

    async def get_action(self, input_items: list[Any], previous_response_id: Optional[str] = None) -> AgentStep:
        try:
            await self.browser.init()
            agent = self.browser.get_agent(
                model=self.model,
                provider=self.provider,
                instructions=AGENT_INSTRUCTIONS,
            )

            items = parse_input_items(list(input_items))
            self.history.extend(normalize_items(items))
            if self.print_steps:
                logger.info(
                    "Conversation history: "
                    + json.dumps([turn.model_dump() for turn in self.history], indent=2)
                )

            request = current_request(items)
            logger.info(
                f"Requesting next action ({len(self.history)} history messages): {request[:50]}..."
            )

            execute_params: dict[str, Any] = {"instruction": request}
            if self.history:
                execute_params["history"] = list(self.history)
            if previous_response_id:
                execute_params["previous_response_id"] = previous_response_id

            result = await agent.execute(**execute_params)

            self.history.append(ChatTurn(role="assistant", content=result.message))
            step = message_step(result.message)
        except Exception as e:
            logger.error(f"Error in browser agent execution: {e}", exc_info=True)
            step = message_step(f"Error: {str(e) or type(e).__name__}")

        self.last_response_id = step.response_id
        return step

"""
Wire models shared by the conversation client, the loop and the state store.

Actions are a discriminated union on ``type``. History input items add the
plain ``{role, content}`` turn, which carries no ``type`` and is tagged
``turn`` by a callable discriminator.
"""

import json
import uuid
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, model_validator

Role = Literal["user", "assistant", "system"]


class ContentPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: Optional[str] = None


def first_text(parts: list[ContentPart]) -> Optional[str]:
    """Text of the first ``text`` part, or None if there is none (or it is empty)."""
    part = next((p for p in parts if p.type == "text"), None)
    if part is not None and part.text:
        return part.text
    return None


# ─── Actions ────────────────────────────────────────────────────────────────────

class MessageAction(BaseModel):
    type: Literal["message"] = "message"
    role: Optional[Role] = None
    content: Union[str, list[ContentPart]] = Field(default_factory=list)

    def text(self) -> Optional[str]:
        if isinstance(self.content, str):
            return self.content or None
        return first_text(self.content)


class FunctionCall(BaseModel):
    type: Literal["function_call"] = "function_call"
    call_id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        args = json.loads(self.arguments or "{}")
        if not isinstance(args, dict):
            raise ValueError(f"arguments for {self.name} must be a JSON object")
        return args


class ComputerCall(BaseModel):
    type: Literal["computer_call"] = "computer_call"
    call_id: str
    action: dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.action.get("type") or "computer")


class ImageOutput(BaseModel):
    type: Literal["input_image"] = "input_image"
    image_url: str


# Either output type may carry a screenshot or a textual/structured result.
ToolOutput = Annotated[
    Union[ImageOutput, str, dict[str, Any], list[Any]],
    Field(union_mode="left_to_right"),
]


class FunctionCallOutput(BaseModel):
    type: Literal["function_call_output"] = "function_call_output"
    call_id: str
    output: ToolOutput


class ComputerCallOutput(BaseModel):
    type: Literal["computer_call_output"] = "computer_call_output"
    call_id: str
    output: ToolOutput
    acknowledged_safety_checks: list[Any] = Field(default_factory=list)
    current_url: Optional[str] = None


Action = Annotated[
    Union[MessageAction, FunctionCall, ComputerCall, FunctionCallOutput, ComputerCallOutput],
    Field(discriminator="type"),
]
PendingCall = Union[FunctionCall, ComputerCall]
CallOutput = Union[FunctionCallOutput, ComputerCallOutput]


class AgentStep(BaseModel):
    """One unit of agent output: actions plus the continuation token for the next call."""

    model_config = ConfigDict(populate_by_name=True)

    output: list[Action] = Field(default_factory=list)
    response_id: str = Field(alias="responseId")

    @model_validator(mode="after")
    def _single_message(self) -> "AgentStep":
        messages = [item for item in self.output if isinstance(item, MessageAction) and item.text()]
        if len(messages) > 1:
            raise ValueError(f"a step may carry at most one message, got {len(messages)}")
        return self

    def message_text(self) -> Optional[str]:
        for item in self.output:
            if isinstance(item, MessageAction) and item.text():
                return item.text()
        return None

    def pending_calls(self) -> list[PendingCall]:
        return [item for item in self.output if isinstance(item, (FunctionCall, ComputerCall))]


class AgentState(BaseModel):
    """Persisted resumption unit: ``{goal, currentStep: {output, responseId}}``."""

    model_config = ConfigDict(populate_by_name=True)

    goal: str
    current_step: AgentStep = Field(alias="currentStep")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ─── History input items ────────────────────────────────────────────────────────

class ChatTurn(BaseModel):
    role: Role
    content: Union[str, list[ContentPart]]

    def text(self) -> Optional[str]:
        if isinstance(self.content, str):
            return self.content
        return first_text(self.content)


def _input_item_tag(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("type") or "turn"
    return getattr(value, "type", None) or "turn"


InputItem = Annotated[
    Union[
        Annotated[ChatTurn, Tag("turn")],
        Annotated[MessageAction, Tag("message")],
        Annotated[FunctionCallOutput, Tag("function_call_output")],
        Annotated[ComputerCallOutput, Tag("computer_call_output")],
        Annotated[FunctionCall, Tag("function_call")],
        Annotated[ComputerCall, Tag("computer_call")],
    ],
    Discriminator(_input_item_tag),
]

_INPUT_ITEMS = TypeAdapter(list[InputItem])


def parse_input_items(raw: list[Any]) -> list[Any]:
    """Validate loosely-shaped dicts (or models) into typed input items."""
    return _INPUT_ITEMS.validate_python(raw)


def new_response_id() -> str:
    return f"resp_{uuid.uuid4().hex}"


def message_step(text: str) -> AgentStep:
    return AgentStep(
        output=[MessageAction(role="assistant", content=[ContentPart(type="text", text=text)])],
        response_id=new_response_id(),
    )

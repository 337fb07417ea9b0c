import pytest

from operator_agent import (
    AGENT_INSTRUCTIONS,
    DEFAULT_REQUEST,
    SCREENSHOT_NOTE,
    BrowserOperatorAgent,
    current_request,
    normalize_items,
)
from operator_models import ChatTurn

from conftest import FakeBrowser, FakeTaskAgent

MIXED_ITEMS = [
    {"role": "user", "content": "find the price of a kettle"},
    {"type": "message", "content": [{"type": "image"}, {"type": "text", "text": "I found two shops"}]},
    {"type": "message", "role": "user", "content": [{"type": "text", "text": "pick the cheaper"}]},
    {"type": "message", "content": [{"type": "image"}]},
    {
        "type": "computer_call_output",
        "call_id": "c1",
        "output": {"type": "input_image", "image_url": "data:image/png;base64,AAAA"},
    },
    {"type": "function_call_output", "call_id": "c2", "output": "success"},
    {"type": "function_call", "call_id": "c3", "name": "back"},
]


def test_normalize_items_applies_one_rule_per_variant():
    history = normalize_items(MIXED_ITEMS)
    assert [(turn.role, turn.content) for turn in history] == [
        ("user", "find the price of a kettle"),
        ("assistant", "I found two shops"),
        ("user", "pick the cheaper"),
        ("system", SCREENSHOT_NOTE),
        ("system", 'Tool execution result: "success"'),
    ]


def test_normalize_never_replays_image_payloads():
    history = normalize_items(MIXED_ITEMS)
    assert all("base64" not in turn.content for turn in history)


def test_normalize_is_idempotent():
    once = normalize_items(MIXED_ITEMS)
    twice = normalize_items(once)
    assert twice == once
    assert normalize_items([turn.model_dump() for turn in once]) == once


def test_turn_with_content_parts_is_flattened():
    history = normalize_items([{"role": "user", "content": [{"type": "text", "text": "hello"}]}])
    assert history == [ChatTurn(role="user", content="hello")]


@pytest.mark.parametrize(
    "items, expected",
    [
        (MIXED_ITEMS, "pick the cheaper"),
        ([{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}], "a"),
        ([{"role": "assistant", "content": "b"}], DEFAULT_REQUEST),
        ([], DEFAULT_REQUEST),
        ([{"type": "function_call_output", "call_id": "c", "output": "success"}], DEFAULT_REQUEST),
        ([{"role": "user", "content": [{"type": "image"}]}], DEFAULT_REQUEST),
    ],
)
def test_current_request(items, expected):
    assert current_request(items) == expected


@pytest.mark.asyncio
async def test_get_action_first_turn():
    task_agent = FakeTaskAgent(["The kettle costs $25"])
    browser = FakeBrowser(task_agent=task_agent)
    client = BrowserOperatorAgent(browser)

    step = await client.get_action([ChatTurn(role="user", content="find the kettle price")], None)

    assert browser.init_calls == 1
    assert step.message_text() == "The kettle costs $25"
    assert step.response_id and client.last_response_id == step.response_id
    call = task_agent.calls[0]
    assert call["instruction"] == "find the kettle price"
    assert call["history"] == [ChatTurn(role="user", content="find the kettle price")]
    assert call["previous_response_id"] is None
    assert [turn.role for turn in client.history] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_get_action_threads_previous_token_and_appends_history():
    task_agent = FakeTaskAgent(["first", "second"])
    client = BrowserOperatorAgent(FakeBrowser(task_agent=task_agent))

    first = await client.get_action([{"role": "user", "content": "goal"}])
    second = await client.get_action(
        [{"role": "assistant", "content": "first"}, {"role": "user", "content": "more"}],
        first.response_id,
    )

    assert task_agent.calls[1]["previous_response_id"] == first.response_id
    assert task_agent.calls[1]["instruction"] == "more"
    assert second.response_id != first.response_id
    assert [turn.content for turn in client.history] == ["goal", "first", "first", "more", "second"]


@pytest.mark.asyncio
async def test_get_action_omits_history_when_empty():
    task_agent = FakeTaskAgent(["looked around"])
    client = BrowserOperatorAgent(FakeBrowser(task_agent=task_agent))

    await client.get_action([])

    assert task_agent.calls[0] == {
        "instruction": DEFAULT_REQUEST,
        "history": None,
        "previous_response_id": None,
    }


@pytest.mark.asyncio
async def test_get_action_absorbs_agent_failure():
    task_agent = FakeTaskAgent([RuntimeError("rate limited")])
    client = BrowserOperatorAgent(FakeBrowser(task_agent=task_agent))

    step = await client.get_action([{"role": "user", "content": "goal"}], "resp_prev")

    assert step.message_text() == "Error: rate limited"
    assert step.response_id != "resp_prev"


@pytest.mark.asyncio
async def test_get_action_absorbs_malformed_input():
    client = BrowserOperatorAgent(FakeBrowser())

    step = await client.get_action([{"type": "not-a-thing"}])

    assert step.message_text().startswith("Error:")


@pytest.mark.asyncio
async def test_get_action_absorbs_browser_failure():
    browser = FakeBrowser()

    async def broken_init():
        raise ConnectionError("cdp refused")

    browser.init = broken_init
    step = await BrowserOperatorAgent(browser).get_action([{"role": "user", "content": "goal"}])

    assert step.message_text() == "Error: cdp refused"


@pytest.mark.asyncio
async def test_get_action_requests_agent_with_model_provider_and_instructions():
    seen = {}
    browser = FakeBrowser()

    def get_agent(**options):
        seen.update(options)
        return browser.task_agent

    browser.get_agent = get_agent
    await BrowserOperatorAgent(browser, model="m", provider="openai").get_action([{"role": "user", "content": "x"}])

    assert seen == {"model": "m", "provider": "openai", "instructions": AGENT_INSTRUCTIONS}


@pytest.mark.parametrize(
    "item, expected",
    [
        (
            {"type": "function_call_output", "call_id": "f1", "output": {"status": "ok", "rows": 3}},
            ("system", 'Tool execution result: {"status": "ok", "rows": 3}'),
        ),
        (
            {"type": "computer_call_output", "call_id": "c1", "output": "clicked"},
            ("system", 'Tool execution result: "clicked"'),
        ),
        (
            {"type": "function_call_output", "call_id": "f2", "output": {"type": "input_image", "image_url": "https://img"}},
            ("system", SCREENSHOT_NOTE),
        ),
        (
            {"type": "function_call_output", "call_id": "f3", "output": ["a", "b"]},
            ("system", 'Tool execution result: ["a", "b"]'),
        ),
        ({"type": "message", "role": "user", "content": "hello"}, ("user", "hello")),
        ({"type": "message", "content": "noted"}, ("assistant", "noted")),
    ],
)
def test_tool_outputs_are_normalized_by_shape(item, expected):
    [turn] = normalize_items([item])
    assert (turn.role, turn.content) == expected


@pytest.mark.asyncio
async def test_get_action_accepts_textual_and_structured_outputs():
    task_agent = FakeTaskAgent(["ok"])
    client = BrowserOperatorAgent(FakeBrowser(task_agent=task_agent))

    step = await client.get_action(
        [
            {"type": "function_call_output", "call_id": "f1", "output": {"status": "ok", "rows": 3}},
            {"type": "computer_call_output", "call_id": "c1", "output": "clicked"},
            {"type": "message", "role": "user", "content": "hello"},
        ]
    )

    assert step.message_text() == "ok"
    [call] = task_agent.calls
    assert call["instruction"] == "hello"
    assert [turn.role for turn in call["history"]] == ["system", "system", "user"]

"""
Slack transport.

A top-level message that mentions the bot starts a new session for that
thread; replies in the thread resume it, stop it, or (if nothing was saved
yet) point at the live debugger. Each invocation runs under the wall-clock
budget and holds the session's lock for its whole duration.
"""

import base64
import logging
import re
from collections import OrderedDict
from typing import Any, Optional

from operator_browser import (
    create_remote_session,
    find_sessions_for_thread,
    release_remote_session,
    session_debug_url,
    thread_key,
)
from operator_config import STOP_KEYWORD
from operator_context import OperatorContext
from operator_errors import InvocationTimeoutError
from operator_loop import run_with_deadline
from operator_models import AgentState
from operator_regions import DEFAULT_REGION, Region, select_region

logger = logging.getLogger(__name__)

OPERATOR_LABEL = "🤖 Browser Operator"
TIMEOUT_NOTICE = (
    "⚠️ Timed out while working on this. The browser session has been released; "
    "mention me again to start over."
)
_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")
# event ids kept for deduplication, oldest dropped first
MAX_TRACKED_EVENTS = 1000


class SlackThreadObserver:
    """Reports loop progress into one Slack thread."""

    def __init__(self, client, channel: str, thread_ts: str):
        self.client = client
        self.channel = channel
        self.thread_ts = thread_ts

    async def say(self, text: str) -> None:
        await self.client.chat_postMessage(channel=self.channel, thread_ts=self.thread_ts, text=text)

    async def started(self, live_url: str) -> None:
        await self.say(f"{OPERATOR_LABEL}: Starting up to complete the task!\n\nYou can follow along at {live_url}")

    async def post_message(self, text: str, live_url: str) -> None:
        await self.say(f"{OPERATOR_LABEL}: {text}\n\nYou can control the browser if needed at {live_url}")

    async def post_screenshot(self, png_base64: str, title: Optional[str] = None) -> None:
        params: dict[str, Any] = {
            "channel": self.channel,
            "thread_ts": self.thread_ts,
            "file": base64.b64decode(_DATA_URL_PREFIX.sub("", png_base64)),
            "filename": "screenshot.png",
        }
        if title:
            params["title"] = title
        await self.client.files_upload_v2(**params)


class SlackEventHandler:
    def __init__(self, context: OperatorContext):
        self.context = context
        self.client = context.slack
        self.bot_user_id = context.settings.slack_bot_user_id
        self.processed_events: OrderedDict[str, None] = OrderedDict()

    @staticmethod
    def url_verification(body: dict) -> Optional[dict]:
        if body.get("type") == "url_verification":
            return {"challenge": body.get("challenge")}
        return None

    def should_handle(self, body: dict) -> bool:
        """True for message callbacks we have not seen yet (Slack retries deliveries)."""
        if body.get("type") != "event_callback":
            return False
        event = body.get("event") or {}
        if event.get("type") != "message" or event.get("bot_id") or event.get("subtype") == "bot_message":
            return False

        event_id = body.get("event_id")
        if event_id:
            if event_id in self.processed_events:
                logger.info(f"Event {event_id} already processed")
                return False
            self.processed_events[event_id] = None
            while len(self.processed_events) > MAX_TRACKED_EVENTS:
                self.processed_events.popitem(last=False)
        return True

    @property
    def mention(self) -> str:
        return f"<@{self.bot_user_id}>"

    def _from_user(self, event: dict) -> bool:
        return not event.get("bot_id") and event.get("user") != self.bot_user_id

    def is_new_mention(self, event: dict) -> bool:
        return not event.get("thread_ts") and self._from_user(event) and self.mention in (event.get("text") or "")

    def is_thread_reply(self, event: dict) -> bool:
        return bool(event.get("thread_ts")) and self._from_user(event)

    async def _say(self, channel: str, thread_ts: str, text: str) -> None:
        await self.client.chat_postMessage(channel=channel, thread_ts=thread_ts, text=text)

    async def handle_message_event(self, event: dict) -> None:
        channel = event.get("channel")
        thread_ts = event.get("thread_ts") or event.get("ts")
        try:
            if self.is_new_mention(event):
                await self.handle_new_mention(event)
            elif self.is_thread_reply(event):
                await self.handle_thread_reply(event)
        except InvocationTimeoutError:
            raise
        except Exception as e:
            await self._say(channel, thread_ts, f"⚠️ There was an error processing your request: {e}")
            raise

    async def _user_region(self, user_id: Optional[str]) -> Region:
        if not user_id:
            return DEFAULT_REGION
        try:
            response = await self.client.users_info(user=user_id)
            tz_name = (response.get("user") or {}).get("tz")
        except Exception as e:
            logger.warning(f"Could not look up timezone for {user_id}: {e}")
            return DEFAULT_REGION
        return select_region(tz_name)

    async def handle_new_mention(self, event: dict) -> None:
        channel, ts, user_id = event["channel"], event["ts"], event.get("user")

        existing = await find_sessions_for_thread(self.context.browserbase, ts)
        if existing:
            logger.info(f"Found existing session: {existing[0].id}")
            return

        goal = (event.get("text") or "").replace(self.mention, "").strip()
        if not goal:
            await self._say(channel, ts, "Mention me together with a task, e.g. “find the weather in Paris”.")
            return

        session = await create_remote_session(
            self.context.browserbase,
            self.context.settings,
            region=await self._user_region(user_id),
            user_metadata={
                "slackChannel": channel,
                "messageTs": thread_key(ts),
                "userId": user_id or "",
            },
        )
        await self.run_invocation(session.id, channel=channel, thread_ts=ts, goal=goal)

    async def handle_thread_reply(self, event: dict) -> None:
        channel, thread_ts = event["channel"], event["thread_ts"]
        text = event.get("text") or ""

        sessions = await find_sessions_for_thread(self.context.browserbase, thread_ts)
        if not sessions:
            return
        session_id = sessions[0].id

        if STOP_KEYWORD in text.lower():
            await release_remote_session(self.context.browserbase, self.context.settings, session_id)
            await self._say(channel, thread_ts, "Browser session stopped successfully.")
            return

        saved_state = await self.context.store.get_state(session_id)
        if saved_state is None:
            debugger_url = await session_debug_url(self.context.browserbase, session_id)
            await self._say(channel, thread_ts, f"Found running operator session! Debug URL: {debugger_url}")
            return

        await self._say(channel, thread_ts, "👍 Got your response! Continuing with the task...")
        await self.run_invocation(
            session_id,
            channel=channel,
            thread_ts=thread_ts,
            goal=saved_state.goal,
            saved_state=saved_state,
            user_response=text,
        )

    async def run_invocation(
        self,
        session_id: str,
        *,
        channel: str,
        thread_ts: str,
        goal: str,
        saved_state: Optional[AgentState] = None,
        user_response: Optional[str] = None,
    ) -> str:
        observer = SlackThreadObserver(self.client, channel, thread_ts)
        browser = self.context.new_browser(session_id)
        agent = self.context.new_agent(browser)
        loop = self.context.new_loop(browser, agent, session_id=session_id, observer=observer)

        async def _notify_timeout() -> None:
            await observer.say(TIMEOUT_NOTICE)

        async with self.context.locks.hold(session_id):
            try:
                return await run_with_deadline(
                    loop.run(goal, saved_state=saved_state, user_response=user_response),
                    self.context.budget_seconds,
                    on_timeout=_notify_timeout,
                    session_id=session_id,
                )
            except Exception:
                await self._release_after_failure(session_id)
                raise
            finally:
                await browser.close()

    async def _release_after_failure(self, session_id: str) -> None:
        try:
            await release_remote_session(self.context.browserbase, self.context.settings, session_id)
        except Exception as e:
            logger.error(f"Could not release session {session_id} after failure: {e}")

#!/usr/bin/env python3
"""
Browser Operator Server - LLM-driven browsing in remote Browserbase sessions.

Architecture:
  [HTTP client] --POST /api/agent--> [FastAPI Server] --> [AgentLoop] <--CDP--> [Browserbase session]
  [Slack] ------POST /api/slack----------^                    |
                                                      [S3 session state]

HTTP requests run one invocation synchronously and release the session.
Slack threads keep their session alive between replies and resume from the
state saved with the last message.
"""

import asyncio
import functools
import logging
import os
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from operator_browser import create_remote_session, release_remote_session
from operator_config import OPERATOR_PORT, OperatorSettings
from operator_context import OperatorContext, build_context
from operator_errors import InvocationTimeoutError
from operator_loop import run_with_deadline
from operator_regions import select_region
from operator_slack import SlackEventHandler

# ─── Logging ────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("operator-server")


# ─── FastAPI App ────────────────────────────────────────────────────────────────

app = FastAPI(title="Browser Operator Server", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ─── Global State ───────────────────────────────────────────────────────────────

class ServerState:
    def __init__(self):
        self.context: Optional[OperatorContext] = None
        self.slack_handler: Optional[SlackEventHandler] = None
        self.background_tasks: set[asyncio.Task] = set()

state = ServerState()


def get_context() -> OperatorContext:
    if state.context is None:
        raise RuntimeError("Operator context is not initialized")
    return state.context


def get_slack_handler(context: OperatorContext = Depends(get_context)) -> Optional[SlackEventHandler]:
    if context.slack is None:
        return None
    # one handler per context so retried deliveries are deduplicated
    if state.slack_handler is None or state.slack_handler.context is not context:
        state.slack_handler = SlackEventHandler(context)
    return state.slack_handler


# ─── Background Tasks ───────────────────────────────────────────────────────────

def _task_finished(label: str, task: asyncio.Task) -> None:
    state.background_tasks.discard(task)
    if task.cancelled():
        logger.info(f"{label} cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"{label} failed: {exc}", exc_info=exc)


def _spawn(coro, label: str) -> asyncio.Task:
    """Run ``coro`` after the response is sent, keeping a reference until it finishes."""
    task = asyncio.create_task(coro)
    state.background_tasks.add(task)
    task.add_done_callback(functools.partial(_task_finished, label))
    return task


# ─── API Endpoints ──────────────────────────────────────────────────────────────

class RunGoalRequest(BaseModel):
    goal: Optional[str] = None
    timezone: Optional[str] = None


@app.post("/api/agent")
async def run_goal(payload: RunGoalRequest, context: OperatorContext = Depends(get_context)):
    """Run the operator on one goal and return its answer."""
    goal = (payload.goal or "").strip()
    if not goal:
        return JSONResponse(status_code=400, content={"error": "Missing required field: goal"})

    session_id: Optional[str] = None
    browser = None
    try:
        region = select_region(payload.timezone or os.environ.get("TZ"))
        session = await create_remote_session(context.browserbase, context.settings, region=region)
        session_id = session.id

        browser = context.new_browser(session_id, region)
        agent = context.new_agent(browser)
        loop = context.new_loop(browser, agent, session_id=session_id)

        result = await run_with_deadline(loop.run(goal), context.budget_seconds, session_id=session_id)
        return {"result": result}
    except InvocationTimeoutError as e:
        logger.warning(f"Agent request timed out: {e}")
        return JSONResponse(status_code=504, content={"error": "Processing timeout"})
    except Exception as e:
        logger.error(f"Error handling agent request: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})
    finally:
        if browser is not None:
            await browser.close()
        if session_id:
            try:
                await release_remote_session(context.browserbase, context.settings, session_id)
            except Exception as e:
                logger.error(f"Could not release session {session_id}: {e}")


@app.post("/api/slack")
async def slack_events(request: Request, handler: Optional[SlackEventHandler] = Depends(get_slack_handler)):
    """Slack Events API callback. Work is scheduled in the background; Slack gets an immediate ack."""
    try:
        body = await request.json()

        challenge = SlackEventHandler.url_verification(body)
        if challenge is not None:
            return challenge

        if handler is None:
            return JSONResponse(status_code=503, content={"error": "Slack is not configured"})

        if handler.should_handle(body):
            event = body["event"]
            _spawn(
                handler.handle_message_event(event),
                label=f"Slack event {body.get('event_id') or event.get('ts')}",
            )
        return {"ok": True}
    except Exception as e:
        logger.error(f"Error handling Slack event: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


@app.get("/api/health")
async def health(context: OperatorContext = Depends(get_context)):
    return {
        "status": "ok",
        "state_store": context.store.is_configured,
        "slack": context.slack is not None,
        "active_tasks": len(state.background_tasks),
    }


# ─── Lifecycle ──────────────────────────────────────────────────────────────────

@app.on_event("startup")
async def startup():
    """Validate configuration and build the shared clients."""
    if state.context is None:
        state.context = build_context(OperatorSettings.from_env())
    settings = state.context.settings
    logger.info(
        f"Operator ready | model={settings.model} provider={settings.provider} "
        f"| state_store={state.context.store.is_configured} | slack={settings.slack_configured}"
    )


@app.on_event("shutdown")
async def shutdown():
    """Cancel invocations still running in the background."""
    for task in list(state.background_tasks):
        task.cancel()
    if state.background_tasks:
        await asyncio.gather(*state.background_tasks, return_exceptions=True)


def main():
    uvicorn.run(app, host="0.0.0.0", port=OPERATOR_PORT, log_level="info")


if __name__ == "__main__":
    main()

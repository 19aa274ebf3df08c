"""
Web Task Agent Server

Hosts the browser task runtime behind a small HTTP API. One browser session
is shared by every request; task runs are serialised by a lock.

Start with:
  python -m src.agents.web_agent.server

Environment variables are read once at startup (see config.py):
  ── Oracle ────────────────────────────────────────────────────────────────
  ORACLE_MODE        "openai" (default, any OpenAI-compatible endpoint) or "claude"
  OPENAI_API_KEY     API key (or use LLM_API_KEY)
  LLM_BASE_URL       Endpoint        (default: https://api.openai.com/v1)
  LLM_MODEL          Model name      (default: gpt-4-turbo-preview)
  ANTHROPIC_API_KEY  Key for ORACLE_MODE=claude
  ── Browser ───────────────────────────────────────────────────────────────
  BROWSER_USER_DATA_DIR  Persistent profile dir (default: .pw_user_data)
  PLAYWRIGHT_BROWSER     chromium | firefox | webkit (falls back in that order)
  BROWSER_HEADLESS       Run headless (default: false → visible browser)
  STORAGE_STATE_PATH     Save cookies/storage here on shutdown
  ── Shared ────────────────────────────────────────────────────────────────
  AGENT_MAX_ITERATIONS   Iteration cap per task (default: 20)
  AGENT_PORT             Server port (default: 8001)
  DEBUG                  Verbose logging
"""

import asyncio
import logging
import os
import time
import traceback
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional, Set

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .agent import TaskOrchestrator
from .config import load_config
from .driver import PlaywrightDriver
from .models import Task
from .oracle import build_oracle
from .security import SecurityGate
from .session import SessionManager, TargetNotFound

config = load_config()

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Runtime (lazy init) ───────────────────────────────────────────────────

_oracle = None
_session: Optional[SessionManager] = None
_orchestrator: Optional[TaskOrchestrator] = None


def get_oracle():
    global _oracle
    if _oracle is None:
        _oracle = build_oracle(config)
        logger.info(f"Oracle initialised: mode={config.oracle_mode}, model={_oracle.label}")
    return _oracle


async def get_runtime() -> TaskOrchestrator:
    """Return (or lazily create) the orchestrator and its browser session."""
    global _session, _orchestrator
    if _orchestrator is not None:
        return _orchestrator

    if _session is None:
        driver = PlaywrightDriver(
            user_data_dir=config.user_data_dir,
            engine=config.browser_engine,
            headless=config.headless,
        )
        session = SessionManager(driver, max_elements=config.max_elements, body_chars=config.body_excerpt_chars)
        await session.start()
        _session = session

    _orchestrator = TaskOrchestrator.from_config(config, _session, get_oracle(), SecurityGate())
    logger.info(f"Runtime initialised: headless={config.headless}, max_iterations={config.max_iterations}")
    return _orchestrator


async def shutdown_runtime() -> None:
    global _session, _orchestrator
    session, _session, _orchestrator = _session, None, None
    if session is None:
        return
    if config.storage_state_path:
        try:
            await session.save_storage_state(config.storage_state_path)
        except Exception as e:
            logger.warning(f"Failed to save storage state: {e}")
    await session.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await shutdown_runtime()


# ── FastAPI App ───────────────────────────────────────────────────────────

app = FastAPI(
    title="Web Task Agent",
    description="LLM-driven browser task runtime powered by Playwright",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Concurrency & cancellation ───────────────────────────────────────────

_invoke_lock = asyncio.Lock()
_cancel_events: Set[asyncio.Event] = set()


# ── Request / Response Models ─────────────────────────────────────────────

class InvokeRequest(BaseModel):
    input: str
    url: Optional[str] = None
    max_iterations: Optional[int] = None


class InvokeResponse(BaseModel):
    response: str
    tool_calls: list = []
    metadata: dict = {}


class NavigateRequest(BaseModel):
    url: str


class SwitchTabRequest(BaseModel):
    target: str = ""


# ── Endpoints ─────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    """Health check — reports oracle reachability and browser state."""
    oracle_ok, oracle_msg = await get_oracle().check_reachable()
    return {
        "status": "ok" if oracle_ok else "degraded",
        "agent": "web-task-agent",
        "oracle_mode": config.oracle_mode,
        "model": get_oracle().label,
        "oracle_reachable": oracle_ok,
        "oracle_message": oracle_msg,
        "browser_started": _session is not None,
        "session_state": _session.state.value if _session is not None else None,
        "busy": _invoke_lock.locked(),
    }


@app.post("/invoke")
async def invoke(request: InvokeRequest):
    """Run one browser task (serialised — one at a time)."""
    oracle = get_oracle()
    ok, msg = await oracle.check_reachable()
    if not ok:
        return InvokeResponse(
            response=f"Pre-flight failed: {msg}",
            metadata={"error": msg, "preflight_failed": True},
        )

    cancel = asyncio.Event()
    _cancel_events.add(cancel)
    logger.info(f"Queued: {request.input[:100]}...")
    start = time.time()
    try:
        async with _invoke_lock:
            if cancel.is_set():
                return InvokeResponse(
                    response="Task cancelled while waiting in queue",
                    metadata={"cancelled": True},
                )

            goal, start_url = request.input, request.url
            if not start_url:
                try:
                    parsed = await oracle.parse_user_request(request.input)
                    goal, start_url = parsed.task or request.input, parsed.url
                    logger.info(f"Parsed request: task={goal!r}, url={start_url!r} ({parsed.reasoning})")
                except Exception as e:
                    logger.warning(f"Request parsing failed, using input as task: {e}")

            orchestrator = await get_runtime()
            task = Task(
                goal=goal,
                start_url=start_url,
                max_iterations=request.max_iterations or config.max_iterations,
            )
            result = await orchestrator.run(task, cancel)

            return InvokeResponse(
                response=result.reason,
                tool_calls=result.to_tool_calls(),
                metadata={
                    "task_success": result.success,
                    "reason_code": result.reason_code,
                    "mode": result.mode,
                    "plan": result.plan,
                    "steps_taken": result.step_count,
                    "duration_seconds": round(result.duration_seconds, 2),
                    "tokens_in": result.prompt_tokens,
                    "tokens_out": result.completion_tokens,
                    "model": oracle.label,
                },
            )

    except Exception as e:
        tb = traceback.format_exc()
        logger.error(f"Task execution failed:\n{tb}")
        error_msg = f"{type(e).__name__}: {str(e)}" if str(e) else type(e).__name__
        return InvokeResponse(
            response=f"Agent execution error: {error_msg}",
            metadata={
                "error": error_msg,
                "traceback": tb[-500:],
                "duration_seconds": round(time.time() - start, 2),
            },
        )
    finally:
        _cancel_events.discard(cancel)


@app.post("/navigate")
async def navigate(request: NavigateRequest):
    """Point the active tab at a URL outside of any task."""
    if _invoke_lock.locked():
        raise HTTPException(status_code=409, detail="A task is running")
    orchestrator = await get_runtime()
    result = await orchestrator.session.navigate(request.url)
    if result.success:
        await orchestrator.session.wait_for_navigation()
    return asdict(result)


@app.get("/tabs")
async def tabs():
    orchestrator = await get_runtime()
    return {"tabs": [asdict(tab) for tab in await orchestrator.session.list_tabs()]}


@app.post("/tabs/switch")
async def switch_tab(request: SwitchTabRequest):
    orchestrator = await get_runtime()
    try:
        tab = await orchestrator.session.switch_active_tab(request.target)
    except TargetNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return asdict(tab)


@app.post("/cancel")
async def cancel():
    """Cancel the running task and any queued ones."""
    pending = list(_cancel_events)
    for event in pending:
        event.set()
    logger.info(f"Cancel requested: signalled {len(pending)} task(s)")
    return {"cancelled": True, "tasks_signalled": len(pending)}


@app.get("/progress")
async def progress():
    """Return live step-level progress for the currently running task."""
    if _orchestrator is None:
        return {"running": False, "state": "idle"}
    orch = _orchestrator
    step_started = getattr(orch, "_current_step_started", 0.0)
    return {
        "running": _invoke_lock.locked(),
        "state": orch.state.value if orch.state else "idle",
        "task": orch.current_task.goal if orch.current_task else None,
        "current_step": getattr(orch, "_current_step", 0),
        "step_elapsed_seconds": round(time.time() - step_started, 1) if step_started else 0.0,
        "tokens_used": orch.context.budget.total,
        "token_limit": orch.context.budget.max_tokens,
        "history_entries": len(orch.context.history),
    }


# ── Main ──────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info(f"  Web Task Agent  (oracle: {config.oracle_mode.upper()})")
    logger.info("=" * 60)
    logger.info(f"  Model:         {get_oracle().label}")
    logger.info(f"  Headless:      {config.headless}")
    logger.info(f"  Profile dir:   {config.user_data_dir}")
    logger.info(f"  Max iterations:{config.max_iterations}")
    logger.info(f"  Token budget:  {config.max_tokens}")
    logger.info(f"  Port:          {config.port}")
    logger.info("=" * 60)

    uvicorn.run(app, host="0.0.0.0", port=config.port)

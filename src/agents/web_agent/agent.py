"""
Web Task Agent — plan-then-iterate browser automation.

Drives one browser session toward a natural-language goal. The oracle is
first asked for a whole plan; each plan step is then turned into a single
action against a fresh page snapshot. If no plan can be produced the agent
falls back to a bounded loop that asks for one action at a time until the
oracle reports the task complete.

    PLANNING ──plan ok──▶ EXECUTING_PLAN ──all steps tried──▶ COMPLETE
        │                      │   ▲
        │ plan failed          ▼   │ page unblocked
        └──────────▶ ITERATING ◀──▶ WAITING_CHALLENGE ──timeout──▶ FAILED
                          │
                          └── is_complete ▶ COMPLETE / cap reached ▶ FAILED
"""

import asyncio
import logging
import time
from typing import List, Optional

from playwright.async_api import Error as PlaywrightError

from .blocking import is_blocked
from .context import BudgetExhausted, ConversationContext, chunk_text_by_tokens, estimate_tokens
from .driver import PageTerminatedError
from .models import (
    ActionResult,
    Decision,
    PageContent,
    StepRecord,
    TabInfo,
    Task,
    TaskResult,
    TaskState,
    UnparsedDecision,
    resolve_decision,
)
from .oracle import PlanningError
from .security import ConfirmationUnavailable, SecurityGate
from .session import SessionUnrecoverable, TargetNotFound

logger = logging.getLogger(__name__)


class ActionError(Exception):
    """A single decided action could not be carried out."""


class ActionDenied(ActionError):
    """The human declined a destructive action."""


class ChallengeTimeout(Exception):
    """A blocking challenge stayed on screen past the wait limit."""


class TaskCancelled(Exception):
    """The caller asked the task to stop."""


# ── Prompts ───────────────────────────────────────────────────────────────

DECISION_FORMAT = """Return a JSON object with:
- action: the action to take (navigate, click, fill, focus, type, press, switch_tab, wait, complete, error)
- selector: CSS selector for the element (if clicking, filling, focusing or typing)
- text: text to enter, key name to press, or tab index / title fragment to switch to
- url: URL to navigate to (if navigating)
- reasoning: explanation of your decision
- is_complete: whether the task is complete
- next_step: what you expect to do next (optional)
- needs_confirm: true if this action deletes data, pays, logs out or is otherwise irreversible"""

SYSTEM_PROMPT = """You are an intelligent web automation agent. Your task is to complete user requests by interacting with web pages.
You can:
- Click on buttons and links (action "click")
- Fill or type into form fields (actions "fill" or "type"; provide text to enter)
- Focus an element before typing if necessary (action "focus")
- Navigate to URLs (action "navigate")
- Switch between open tabs (action "switch_tab"; specify tab index or a fragment of the tab title/URL)
- Press keyboard keys (action "press"; set text to the key name, e.g. "Enter")
- Wait for page load or manual intervention (action "wait")

IMPORTANT INSTRUCTIONS:
- If you encounter a CAPTCHA or security challenge, use the "wait" action to give the user time to solve it manually. Do NOT use "error".
- After waiting, try to navigate again or continue the task.
- Be systematic, logical, and report when the task is complete.
- If no progress can be made after several retries on the same page, only then use "error" action."""

STEP_SYSTEM_PROMPT = """You are an intelligent web automation agent. Provide a single concise action to accomplish the given step on the current page.
Valid actions: navigate, click, fill, focus, type, press, wait, switch_tab, complete, error.
Use "focus" before typing if needed, "type" for freeform text entry (text field provided in the decision), and "press" for keyboard keys like Enter.
Use "switch_tab" when you must operate on a different browser tab (specify tab index or part of the title/URL)."""

ITERATE_USER_PROMPT = """Current task: {task}

Current page state:
{page}

Based on the page content, what should be the next action? Respond with a clear decision.
{format}"""

STEP_USER_PROMPT = """Task: {task}
Plan step: {step}
Current page:
{page}

{format}"""

ACTION_ALIASES = {
    "input": "fill",
    "keypress": "press",
    "key": "press",
    "switch": "switch_tab",
}

# Token reserve for the oracle's reply when making room in the budget
COMPLETION_RESERVE = 400

# Approximate token cap for the body text excerpt in prompts
BODY_EXCERPT_TOKENS = 300


def describe_page(content: PageContent, tabs: List[TabInfo] = ()) -> str:
    """Render a page snapshot (and open tabs) as prompt text."""
    lines = [f"Title: {content.title}", f"URL: {content.url}", "", "Interactive Elements:"]
    for i, el in enumerate(content.elements, start=1):
        lines.append(f"{i}. [{el.kind}] {el.label} (selector: {el.selector})")
    if not content.elements:
        lines.append("(no interactive elements found)")

    if tabs:
        lines += ["", "Open Tabs:"]
        for tab in tabs:
            marker = "*" if tab.active else " "
            lines.append(f"[{marker}] {tab.index}. {tab.title} ({tab.url})")

    if content.body_excerpt:
        excerpt = chunk_text_by_tokens(content.body_excerpt, BODY_EXCERPT_TOKENS)[0]
        lines += ["", "Page text (excerpt):", excerpt]
    return "\n".join(lines)


class TaskOrchestrator:
    """Runs tasks against a SessionManager using a DecisionOracle."""

    def __init__(
        self,
        session,
        oracle,
        gate: Optional[SecurityGate] = None,
        max_tokens: int = 8000,
        max_history: int = 20,
        challenge_poll_interval: float = 2.0,
        challenge_timeout: float = 300.0,
        action_pause: float = 1.0,
        wait_seconds: float = 2.0,
        error_pause: float = 1.0,
    ):
        self.session = session
        self.oracle = oracle
        self.gate = gate or SecurityGate()
        self.context = ConversationContext(max_tokens=max_tokens, max_entries=max_history)
        self.challenge_poll_interval = challenge_poll_interval
        self.challenge_timeout = challenge_timeout
        self.action_pause = action_pause
        self.wait_seconds = wait_seconds
        self.error_pause = error_pause

        # Progress tracking, read by the /progress endpoint
        self.state: Optional[TaskState] = None
        self.current_task: Optional[Task] = None
        self._current_step: int = 0
        self._current_step_started: float = 0.0
        self._cancel: asyncio.Event = asyncio.Event()

    @classmethod
    def from_config(cls, config, session, oracle, gate: Optional[SecurityGate] = None) -> "TaskOrchestrator":
        return cls(
            session,
            oracle,
            gate,
            max_tokens=config.max_tokens,
            max_history=config.max_history,
            challenge_poll_interval=config.challenge_poll_interval,
            challenge_timeout=config.challenge_timeout,
            action_pause=config.action_pause,
            wait_seconds=config.wait_action_seconds,
            error_pause=config.error_pause,
        )

    # ── Main execution loop ─────────────────────────────────────────

    async def run(self, task: Task, cancel: Optional[asyncio.Event] = None) -> TaskResult:
        """Execute a task end-to-end and return its outcome.

        Only token-budget exhaustion, iteration-cap exhaustion, challenge
        timeout, an unrecoverable browser and cancellation end a task early;
        everything else is logged and the loop carries on.
        """
        result = TaskResult(task=task, started_at=time.time())
        self._cancel = cancel or asyncio.Event()
        self.context.reset()
        self._current_step = 0
        self.current_task = task
        logger.info(f"Starting task: {task.goal} (start url: {task.start_url or 'none'})")

        handlers = {
            TaskState.planning: self._plan,
            TaskState.executing_plan: self._execute_plan,
            TaskState.iterating: self._iterate,
        }

        try:
            self.state = TaskState.planning
            if task.start_url and task.start_url != "about:blank":
                nav = await self.session.navigate(task.start_url)
                if not nav.success:
                    self._finish(result, False, "navigation_failed", f"failed to navigate to initial URL: {nav.error}")
                    return result
                await self.session.wait_for_navigation()

            while self.state not in (TaskState.complete, TaskState.failed):
                self.state = await handlers[self.state](task, result)

        except BudgetExhausted as e:
            self._finish(result, False, "token_budget_exhausted", f"token budget exhausted: {e}")
        except ChallengeTimeout as e:
            self._finish(result, False, "challenge_unresolved", f"challenge unresolved: {e}")
        except SessionUnrecoverable as e:
            self._finish(result, False, "session_unrecoverable", f"browser session lost: {e}")
        except TaskCancelled:
            self._finish(result, False, "cancelled", "task cancelled")
        finally:
            result.completed_at = time.time()
            result.prompt_tokens = self.context.budget.prompt_tokens
            result.completion_tokens = self.context.budget.completion_tokens

        logger.info(
            f"Task finished: success={result.success}, reason={result.reason}, "
            f"steps={result.step_count}, duration={result.duration_seconds:.1f}s"
        )
        return result

    def _finish(self, result: TaskResult, success: bool, code: str, reason: str) -> TaskState:
        result.success = success
        result.reason_code = code
        result.reason = reason
        self.state = TaskState.complete if success else TaskState.failed
        if not success:
            logger.warning(f"Task failed ({code}): {reason}")
        return self.state

    # ── Modes ───────────────────────────────────────────────────────

    async def _plan(self, task: Task, result: TaskResult) -> TaskState:
        content = await self.session.current_content()
        tabs = await self.session.list_tabs()
        try:
            steps = await self._guard(self.oracle.plan(task.goal, describe_page(content, tabs)))
        except PlanningError as e:
            logger.info(f"Planning failed, falling back to iterative mode: {e}")
            result.mode = "iterating"
            return TaskState.iterating

        result.plan = list(steps)
        result.mode = "plan"
        logger.info(f"Plan generated with {len(steps)} steps. Executing each step once.")
        return TaskState.executing_plan

    async def _execute_plan(self, task: Task, result: TaskResult) -> TaskState:
        total = len(result.plan)
        for number, step in enumerate(result.plan, start=1):
            self._check_cancel()
            self._current_step = number
            self._current_step_started = time.time()
            logger.info(f"--- Executing plan step {number}/{total}: {step}")

            content = await self._observe()
            tabs = await self.session.list_tabs()
            user = STEP_USER_PROMPT.format(
                task=task.goal, step=step, page=describe_page(content, tabs), format=DECISION_FORMAT,
            )
            decision = await self._decide(STEP_SYSTEM_PROMPT, user)
            logger.info(f"Decision for step {number}: {decision.action}: {decision.reasoning[:200]}")
            await self._act(decision, result, number, mode="plan")
            await self._sleep(self.action_pause)

        return self._finish(result, True, "plan_completed", f"plan completed ({total} steps attempted)")

    async def _iterate(self, task: Task, result: TaskResult) -> TaskState:
        for iteration in range(1, task.max_iterations + 1):
            self._check_cancel()
            self._current_step = iteration
            self._current_step_started = time.time()
            logger.info(f"=== Iteration {iteration}/{task.max_iterations} ===")

            content = await self._observe()
            tabs = await self.session.list_tabs()
            user = ITERATE_USER_PROMPT.format(task=task.goal, page=describe_page(content, tabs), format=DECISION_FORMAT)
            decision = await self._decide(SYSTEM_PROMPT, user)
            logger.info(f"Decision: {decision.action}: {decision.reasoning[:200]}")

            if decision.is_complete:
                result.steps.append(StepRecord(
                    step_number=iteration, mode="iterating", action="complete",
                    action_input={}, reasoning=decision.reasoning, result="Task complete", success=True,
                ))
                return self._finish(result, True, "completed", decision.reasoning or "task completed")

            await self._act(decision, result, iteration, mode="iterating")
            await self._sleep(self.action_pause)

        return self._finish(
            result, False, "budget_exhausted",
            f"budget exhausted: max iterations ({task.max_iterations}) reached without completing task: {task.goal}",
        )

    # ── Observation & challenge wait ────────────────────────────────

    async def _observe(self) -> PageContent:
        """Fresh snapshot; if a challenge is showing, wait it out first."""
        content = await self.session.current_content()
        if is_blocked(content):
            content = await self._wait_for_challenge(content)
        return content

    async def _wait_for_challenge(self, content: PageContent) -> PageContent:
        resume_state = self.state
        self.state = TaskState.waiting_challenge
        logger.warning(f"CAPTCHA detected on {content.url}. Waiting for you to solve it...")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.challenge_timeout
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ChallengeTimeout(f"still blocked after {self.challenge_timeout:.0f}s on {content.url}")
                await self._sleep(min(self.challenge_poll_interval, remaining))
                try:
                    content = await self.session.current_content()
                except (PlaywrightError, PageTerminatedError) as e:
                    logger.info(f"Checking page: {e}")
                    continue
                if not is_blocked(content):
                    logger.info(f"CAPTCHA solved! Now at: {content.url}")
                    return content
                logger.info("Waiting for CAPTCHA...")
        finally:
            self.state = resume_state

    # ── Oracle ──────────────────────────────────────────────────────

    async def _decide(self, system: str, user: str) -> Decision:
        needed = estimate_tokens(system) + estimate_tokens(user) + COMPLETION_RESERVE
        self.context.make_room(needed)

        try:
            reply, raw = await self._guard(self.oracle.decide(system, user, self.context.messages()))
        except TaskCancelled:
            raise
        except Exception as e:
            logger.error(f"Oracle decision error: {e}")
            return resolve_decision(UnparsedDecision(raw=str(e)))

        decision = resolve_decision(reply)
        self.context.record(user, raw or decision.model_dump_json())
        return decision

    # ── Action dispatch ─────────────────────────────────────────────

    async def _act(self, decision: Decision, result: TaskResult, number: int, mode: str) -> bool:
        started = time.time()
        action = ACTION_ALIASES.get(decision.action.lower().strip(), decision.action.lower().strip())
        try:
            detail = await self._dispatch(action, decision)
            success = action != "error"
        except (ActionError, TargetNotFound, ConfirmationUnavailable) as e:
            logger.warning(f"Action {action!r} failed at {mode} step {number}: {e}")
            detail = str(e)
            success = False

        result.steps.append(StepRecord(
            step_number=number,
            mode=mode,
            action=action,
            action_input=decision.model_dump(include={"selector", "text", "url"}, exclude_none=True),
            reasoning=decision.reasoning,
            result=detail,
            success=success,
            duration_seconds=time.time() - started,
        ))
        return success

    async def _dispatch(self, action: str, decision: Decision) -> str:
        if decision.needs_confirm:
            request = self.gate.build_request(action, decision.reasoning, target=decision.selector or decision.url)
            approved = await self.gate.request_confirmation(request)
            self.gate.log_action(action, decision.reasoning, approved)
            if not approved:
                raise ActionDenied("action denied by user")

        if action == "navigate":
            if not decision.url:
                raise ActionError("navigate requires a url")
            detail = _checked(await self.session.navigate(decision.url))
            await self.session.wait_for_navigation()
            return detail

        if action in ("click", "focus"):
            if not decision.selector:
                raise ActionError(f"{action} requires a selector")
            detail = _checked(await self.session.dispatch_action(action, decision.selector))
            if action == "click":
                await self.session.wait_for_navigation()
            return detail

        if action in ("fill", "type"):
            if not decision.selector or not decision.text:
                raise ActionError(f"{action} requires a selector and text")
            return _checked(await self.session.dispatch_action(action, decision.selector, decision.text))

        if action == "press":
            if not decision.text:
                raise ActionError("press requires a key name in text")
            return _checked(await self.session.dispatch_action("press", text=decision.text))

        if action == "switch_tab":
            tab = await self.session.switch_active_tab(decision.text or decision.url or "")
            return f"Switched to tab {tab.index}: {tab.title}"

        if action == "wait":
            await self._sleep(self.wait_seconds)
            return f"Waited {self.wait_seconds:.1f}s"

        if action == "complete":
            return "complete"

        if action == "error":
            logger.info(f"Oracle reported a problem, pausing: {decision.reasoning[:200]}")
            await self._sleep(self.error_pause)
            return decision.reasoning

        raise ActionError(f"unknown action: {decision.action}")

    # ── Cancellation ────────────────────────────────────────────────

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise TaskCancelled()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that wakes up immediately on cancellation."""
        self._check_cancel()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise TaskCancelled()

    async def _guard(self, awaitable):
        """Await `awaitable` unless cancellation arrives first."""
        if self._cancel.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TaskCancelled()
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise TaskCancelled()


def _checked(res: ActionResult) -> str:
    if not res.success:
        raise ActionError(res.error or f"{res.action} failed: {res.detail}")
    if res.warning:
        return f"{res.detail} (warning: {res.warning})"
    return res.detail

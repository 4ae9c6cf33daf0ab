"""Think-act-observe agent loop with pause/resume/stop control and a CLI."""

import argparse
import asyncio
import copy
import json
import logging
import re
import sys
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from importlib import metadata
from pathlib import Path

from . import fmt
from .memory import LocalMemory, MemoryStore, TokenTextSplitter, litellm_embedder
from .parser import FINISH_NAME, OutputParser, Reply
from .planner import PLAN_TEMPLATE, Planner, draft_plan, parse_plan, plan_goals
from .prompt import (
    USER_INPUT_NEXT_STEP,
    Message,
    PromptBuilder,
    estimate_tokens,
    get_model_context_size,
)
from .report import AgentBusyError, AgentError, ReportCollector
from .tools import (
    HUMAN_INPUT_TOOL_NAME,
    TERMINAL_RESULTS,
    RequestHumanInput,
    Tool,
    build_tools,
    dispatch,
)

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 200

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_EXHAUSTED = 2
EXIT_STOPPED = 3

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)

Model = Callable[[list[Message]], Awaitable[str]]
Listener = Callable[[dict], None]


class ContextOverflowError(AgentError):
    """Raised when the LLM call fails due to context window overflow."""


class AgentState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    FINISHED = "finished"


@dataclass
class StepInput:
    """A pending step supplied at start or resume.

    A non-empty assistant_reply replaces the model call for that iteration;
    a non-empty result replaces the tool call.
    """

    user_message: str | None = None
    assistant_reply: str = ""
    result: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "StepInput":
        return cls(
            user_message=data.get("user_message"),
            assistant_reply=data.get("assistant_reply") or "",
            result=data.get("result"),
        )


@dataclass
class Step:
    user_message: str | None
    assistant_reply: str
    parsed: Reply
    result: str | None = None

    @property
    def complete(self) -> bool:
        return bool(self.assistant_reply) and self.result is not None

    def to_dict(self) -> dict:
        return {
            "user_message": self.user_message,
            "assistant_reply": self.assistant_reply,
            "parsed": self.parsed.to_dict(),
            "result": self.result,
        }


class CancelToken:
    """One-shot cancellation signal carrying an optional reason."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class PauseGate:
    """Open by default; close() makes wait() block until open() is called."""

    def __init__(self):
        self._open = asyncio.Event()
        self._open.set()

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    def close(self) -> None:
        self._open.clear()

    def open(self) -> None:
        self._open.set()

    async def wait(self) -> None:
        await self._open.wait()


@dataclass
class RunContext:
    goals: list[str]
    history: list[Message] = field(default_factory=list)
    steps: list[Step] = field(default_factory=list)
    pending: deque = field(default_factory=deque)
    iteration: int = 0
    cancel: CancelToken = field(default_factory=CancelToken)


class _RunCancelled(Exception):
    pass


def _to_step_input(step) -> StepInput:
    if isinstance(step, StepInput):
        return step
    if isinstance(step, Step):
        return StepInput(step.user_message, step.assistant_reply, step.result)
    return StepInput.from_dict(step)


def _is_failure(result: str) -> bool:
    return (
        result.startswith("Error:")
        or result.startswith("Unknown command")
        or " returned: Error: " in result
        or " returned: error: " in result
    )


class AgentLoop:
    """State machine driving one run at a time.

    States go idle -> running -> (paused <-> running) -> finished | stopped.
    The loop is interruptible at every suspension point: stop() aborts an
    in-flight prompt build, model call, tool call or memory write, and no
    further history or memory side effects happen afterwards. pause() takes
    effect at the next iteration boundary.
    """

    def __init__(
        self,
        model: Model,
        prompt_builder: PromptBuilder,
        tools: list[Tool],
        memory: MemoryStore | None = None,
        max_iterations: int = 100,
        human_in_the_loop: bool = True,
        replay: bool = True,
        human_input_timeout: float | None = 120.0,
        splitter: TokenTextSplitter | None = None,
        output_parser: OutputParser | None = None,
        report: ReportCollector | None = None,
        verbose: bool = False,
    ):
        self.model = model
        self.prompt_builder = prompt_builder
        if human_in_the_loop:
            self.tools = list(tools)
        else:
            self.tools = [t for t in tools if t.name != HUMAN_INPUT_TOOL_NAME]
        self.memory = memory
        self.max_iterations = max_iterations
        self.human_in_the_loop = human_in_the_loop
        self.replay = replay
        self.human_input_timeout = human_input_timeout
        self.splitter = splitter
        self.output_parser = output_parser or OutputParser()
        self.report = report
        self.verbose = verbose

        self._state = AgentState.IDLE
        self._ctx: RunContext | None = None
        self._gate = PauseGate()
        self._listeners: list[Listener] = []
        self.outcome: str | None = None

    # -- Read-only views ------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state in (AgentState.RUNNING, AgentState.PAUSED)

    @property
    def steps(self) -> list[Step]:
        if self._ctx is None:
            return []
        return [replace(s) for s in self._ctx.steps]

    @property
    def history(self) -> list[Message]:
        if self._ctx is None:
            return []
        return list(self._ctx.history)

    @property
    def iteration(self) -> int:
        return self._ctx.iteration if self._ctx else 0

    # -- Update stream --------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener for update events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: str, **extra) -> None:
        event = {
            "type": event_type,
            "state": self._state.value,
            "steps": copy.deepcopy([s.to_dict() for s in self._ctx.steps]) if self._ctx else [],
            **extra,
        }
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("update listener %r failed", listener)

    def _set_state(self, state: AgentState, reason: str | None = None) -> None:
        if state == self._state:
            return
        self._state = state
        logger.debug("agent state -> %s (%s)", state.value, reason)
        if self.verbose:
            fmt.state_change(state.value, reason)
        if self.report is not None:
            self.report.record_state(self.iteration, state.value, reason)
        self._emit("state", reason=reason)

    # -- Control surface ------------------------------------------------------

    def _begin(self, goals: list[str], pending_steps) -> RunContext:
        if self.active:
            raise AgentBusyError("a run is already active for this agent")
        ctx = RunContext(goals=list(goals))
        if pending_steps:
            if self.replay:
                ctx.pending.extend(_to_step_input(s) for s in pending_steps)
            else:
                logger.warning("replay is disabled; ignoring %d pending step(s)", len(pending_steps))
        self._ctx = ctx
        self._gate.open()
        self.outcome = None
        self._set_state(AgentState.RUNNING, "start")
        return ctx

    async def run(
        self,
        goals: list[str],
        request_human_input: RequestHumanInput | None = None,
        pending_steps=None,
    ) -> str | None:
        """Run until finish, a terminal human reply, stop, or the iteration cap.

        Returns the final answer, a sentinel from tools.TERMINAL_RESULTS,
        "Stopped with reason: ..." after stop(), or None on exhaustion.
        Model failures raise AgentError after the loop moves to stopped.
        """
        ctx = self._begin(goals, pending_steps)
        return await self._drive(ctx, request_human_input)

    def start(
        self,
        goals: list[str],
        pending_steps=None,
        request_human_input: RequestHumanInput | None = None,
    ) -> asyncio.Task:
        """Begin a run in the background. Raises AgentBusyError if one is active."""
        ctx = self._begin(goals, pending_steps)
        return asyncio.get_running_loop().create_task(
            self._drive(ctx, request_human_input)
        )

    def stop(self, reason: str | None = None) -> None:
        if self._ctx is None or not self.active:
            return
        self._ctx.cancel.cancel(reason)

    def pause(self) -> None:
        if self._state != AgentState.RUNNING:
            logger.debug("pause ignored in state %s", self._state.value)
            return
        self._gate.close()

    def resume(self, edited_steps=None) -> None:
        """Reopen the pause gate, optionally replacing the pending-step queue."""
        if edited_steps is not None and self._ctx is not None:
            if self.replay:
                self._ctx.pending = deque(_to_step_input(s) for s in edited_steps)
            else:
                logger.warning("replay is disabled; ignoring %d edited step(s)", len(edited_steps))
        self._gate.open()

    # -- Loop -----------------------------------------------------------------

    async def _guard(self, ctx: RunContext, awaitable):
        """Await awaitable unless ctx gets cancelled first, which aborts it."""
        if ctx.cancel.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _RunCancelled
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(ctx.cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if not ctx.cancel.cancelled:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise _RunCancelled

    async def _drive(
        self, ctx: RunContext, request_human_input: RequestHumanInput | None
    ) -> str | None:
        try:
            return await self._iterate(ctx, request_human_input)
        except _RunCancelled:
            reason = ctx.cancel.reason or "Unknown"
            self.outcome = "stopped"
            self._set_state(AgentState.STOPPED, reason)
            return f"Stopped with reason: {reason}"
        except asyncio.CancelledError:
            self.outcome = "stopped"
            self._set_state(AgentState.STOPPED, "cancelled")
            raise
        except Exception as e:
            self.outcome = "error"
            self._set_state(AgentState.STOPPED, f"error: {e}")
            raise

    def _finish(self, outcome: str, reason: str) -> None:
        self.outcome = outcome
        self._set_state(AgentState.FINISHED, reason)
        if self.verbose:
            fmt.completion(self.iteration, outcome)

    async def _reply_for(self, ctx: RunContext, pending, user_input: str) -> str:
        if pending is not None and pending.assistant_reply:
            if self.verbose:
                fmt.iteration_header(ctx.iteration, self.max_iterations, 0)
                fmt.replayed("assistant reply")
            if self.report is not None:
                self.report.record_llm_call(ctx.iteration, 0.0, 0, replayed=True)
            return pending.assistant_reply

        messages = await self._guard(
            ctx, self.prompt_builder.build(ctx.goals, list(ctx.history), user_input)
        )
        token_est = estimate_tokens(messages)
        if self.verbose:
            fmt.iteration_header(ctx.iteration, self.max_iterations, token_est)
        t0 = time.monotonic()
        reply_text = await self._guard(ctx, self.model(messages))
        elapsed = time.monotonic() - t0
        if self.verbose:
            fmt.llm_timing(elapsed)
        if self.report is not None:
            self.report.record_llm_call(ctx.iteration, elapsed, token_est)
        return reply_text if isinstance(reply_text, str) else str(reply_text or "")

    async def _result_for(
        self,
        ctx: RunContext,
        pending,
        reply: Reply,
        request_human_input: RequestHumanInput | None,
    ) -> str:
        name = reply.command.name
        if pending is not None and pending.result:
            if self.verbose:
                fmt.replayed("tool result")
            if self.report is not None:
                self.report.record_tool_call(
                    ctx.iteration, name, True, 0.0, len(pending.result), replayed=True
                )
            return pending.result

        channel = request_human_input if self.human_in_the_loop else None
        t0 = time.monotonic()
        result = await self._guard(
            ctx,
            dispatch(
                reply.command,
                self.tools,
                channel,
                human_input_timeout=self.human_input_timeout,
            ),
        )
        elapsed = time.monotonic() - t0
        failed = _is_failure(result)
        if self.verbose:
            if failed:
                fmt.tool_error(name, result[:MAX_RESULT_PREVIEW])
            else:
                fmt.tool_result(name, elapsed, result[:MAX_RESULT_PREVIEW])
        if self.report is not None:
            self.report.record_tool_call(
                ctx.iteration,
                name,
                not failed,
                elapsed,
                len(result),
                error=result[:500] if failed else None,
            )
        return result

    async def _remember(self, ctx: RunContext, reply_text: str, result: str) -> None:
        if self.memory is None:
            return
        if self.splitter is None:
            self.splitter = TokenTextSplitter()
        text = f"Assistant Reply: {reply_text}\nResult: {result} "
        docs = self.splitter.create_documents([text])
        await self._guard(ctx, self.memory.add_documents(docs))

    def _log_reply(self, reply: Reply, reply_text: str, iteration: int) -> None:
        if reply.is_error:
            if self.verbose:
                fmt.parse_error(reply_text[:MAX_RESULT_PREVIEW])
            if self.report is not None:
                self.report.record_parse_error(iteration, reply_text)
            return
        if not self.verbose:
            return
        if isinstance(reply.thoughts, dict):
            text = reply.thoughts.get("speak") or reply.thoughts.get("text")
            if text:
                fmt.thoughts(str(text))
        args_json = json.dumps(reply.command.args, indent=2, ensure_ascii=False)
        fmt.command(reply.command.name, args_json[:MAX_ARG_LOG])

    async def _iterate(
        self, ctx: RunContext, request_human_input: RequestHumanInput | None
    ) -> str | None:
        while ctx.iteration < self.max_iterations:
            if ctx.cancel.cancelled:
                raise _RunCancelled
            if not self._gate.is_open:
                self._set_state(AgentState.PAUSED, "pause requested")
                await self._guard(ctx, self._gate.wait())
                self._set_state(AgentState.RUNNING, "resumed")

            ctx.iteration += 1
            pending = ctx.pending.popleft() if ctx.pending else None
            if pending is not None and pending.user_message is not None:
                user_input = pending.user_message
            else:
                user_input = USER_INPUT_NEXT_STEP

            reply_text = await self._reply_for(ctx, pending, user_input)
            if ctx.cancel.cancelled:
                raise _RunCancelled
            ctx.history.append(Message("human", user_input))
            ctx.history.append(Message("ai", reply_text))

            reply = self.output_parser.parse(reply_text)
            self._log_reply(reply, reply_text, ctx.iteration)
            step = Step(user_input, reply_text, reply)
            ctx.steps.append(step)
            self._emit("action:start")

            if reply.command.name == FINISH_NAME:
                response = reply.command.args.get("response")
                self._finish("finished", FINISH_NAME)
                return "" if response is None else str(response)

            result = await self._result_for(ctx, pending, reply, request_human_input)
            if ctx.cancel.cancelled:
                raise _RunCancelled
            step.result = result
            self._emit("action:end")

            if result in TERMINAL_RESULTS:
                self._finish("finished", result)
                return result

            await self._remember(ctx, reply_text, result)
            if ctx.cancel.cancelled:
                raise _RunCancelled
            ctx.history.append(Message("system", result))

        self._finish("exhausted", "max iterations reached")
        return None


# ---------------------------------------------------------------------------
# Model call
# ---------------------------------------------------------------------------


async def call_llm(
    messages: list[Message],
    *,
    model: str,
    provider: str = "openai",
    base_url: str | None = None,
    api_key: str | None = None,
    temperature: float | None = None,
    max_output_tokens: int | None = None,
    verbose: bool = False,
) -> str:
    """Call LiteLLM with the appropriate provider. Returns the reply text."""
    import litellm

    litellm.suppress_debug_info = True

    if provider == "openai":
        model_str = model
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "lmstudio":
        model_str = f"openai/{model}"
        kwargs = {
            "api_base": f"{base_url or 'http://127.0.0.1:1234'}/v1",
            "api_key": "lm-studio",
        }
    elif provider == "openrouter":
        bare_id = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        model_str = f"openrouter/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    else:
        raise AgentError(f"unknown provider {provider!r}")

    if verbose:
        fmt.model_info(f"Calling model {model_str} (max_tokens={max_output_tokens})")

    completion_kwargs = dict(
        model=model_str,
        messages=[m.to_llm() for m in messages],
        **kwargs,
    )
    if temperature is not None:
        completion_kwargs["temperature"] = temperature
    if max_output_tokens is not None:
        completion_kwargs["max_tokens"] = max_output_tokens

    try:
        response = await litellm.acompletion(**completion_kwargs)
    except litellm.ContextWindowExceededError as e:
        raise ContextOverflowError(f"context window exceeded: {e}") from e
    except litellm.BadRequestError as e:
        if _CONTEXT_OVERFLOW_RE.search(str(e)):
            raise ContextOverflowError(f"context window exceeded (inferred): {e}") from e
        raise AgentError(f"LLM call failed: {e}") from e
    except Exception as e:
        raise AgentError(f"LLM call failed: {e}") from e

    return response.choices[0].message.content or ""


class LiteLLMModel:
    """Model collaborator bound to one provider/model pair."""

    def __init__(self, model: str, *, verbose: bool = False, **llm_kwargs):
        self.model = model
        self.verbose = verbose
        self.llm_kwargs = llm_kwargs

    async def __call__(self, messages: list[Message]) -> str:
        return await call_llm(
            messages, model=self.model, verbose=self.verbose, **self.llm_kwargs
        )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    from .config import _UNSET

    parser = argparse.ArgumentParser(
        prog="metaagent",
        usage="%(prog)s [options] <goal> [--goal <goal> ...]",
        description="An autonomous think-act-observe agent with human-in-the-loop control.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument("goal", nargs="?", default=None, help="The first goal.")
    parser.add_argument(
        "--goal",
        dest="extra_goals",
        action="append",
        default=[],
        metavar="GOAL",
        help="An additional goal (repeatable).",
    )
    parser.add_argument(
        "--plan",
        type=str,
        default=None,
        metavar="FILE",
        help="Add the Goals of a markdown plan document as goals.",
    )
    parser.add_argument(
        "--draft-plan",
        type=str,
        default=None,
        metavar="FILE",
        help="Clarify and polish the plan in FILE with the model, save it, and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project config template.",
    )
    parser.add_argument(
        "--provider",
        choices=["openai", "lmstudio", "openrouter"],
        default=_UNSET,
        help="LLM provider (default: openai).",
    )
    parser.add_argument(
        "--model", type=str, default=_UNSET, help="Model identifier (default: gpt-3.5-turbo)."
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument("--base-url", default=_UNSET, help="Provider base URL.")
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: provider default).",
    )
    parser.add_argument("--ai-name", default=_UNSET, help="Agent name (default: Tom).")
    parser.add_argument(
        "--ai-role", default=_UNSET, help="Agent role (default: Assistant)."
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum agent loop iterations (default: 100).",
    )
    parser.add_argument(
        "--send-token-limit",
        type=int,
        default=_UNSET,
        help="Prompt token budget (default: the model's context size).",
    )
    parser.add_argument(
        "--memory-token-limit",
        type=int,
        default=_UNSET,
        help="Token ceiling for recalled memory (default: 2500).",
    )
    parser.add_argument(
        "--no-human-input",
        dest="human_in_the_loop",
        action="store_false",
        default=_UNSET,
        help="Don't offer the request-human-input command.",
    )
    parser.add_argument(
        "--human-input-timeout",
        type=float,
        default=_UNSET,
        help="Seconds to wait for a human reply before exiting (default: 120).",
    )
    parser.add_argument(
        "--no-replay",
        dest="replay",
        action="store_false",
        default=_UNSET,
        help="Ignore edited steps supplied on resume.",
    )
    parser.add_argument(
        "--serper-api-key",
        default=_UNSET,
        help="Serper API key enabling the url-finder command (or SERPER_API_KEY).",
    )
    parser.add_argument(
        "--embedding-model",
        default=_UNSET,
        help="Embedding model for long-term memory (default: word overlap).",
    )
    parser.add_argument(
        "--no-fetch",
        action="store_true",
        default=_UNSET,
        help="Don't offer the fetch_url command.",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Base directory for file commands and project config (default: .).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def build_model(args) -> LiteLLMModel:
    return LiteLLMModel(
        args.model,
        verbose=args.verbose,
        provider=args.provider,
        base_url=args.base_url,
        api_key=args.api_key,
        temperature=args.temperature,
        max_output_tokens=args.max_output_tokens,
    )


def build_loop(args, report: ReportCollector | None = None) -> AgentLoop:
    """Wire an AgentLoop from resolved CLI/config values."""
    tools = build_tools(
        args.base_dir,
        serper_api_key=args.serper_api_key,
        fetch=not args.no_fetch,
        human_in_the_loop=args.human_in_the_loop,
    )
    if args.embedding_model:
        memory = LocalMemory(embed=litellm_embedder(args.embedding_model))
    else:
        memory = LocalMemory()
    send_token_limit = args.send_token_limit or get_model_context_size(args.model)
    builder = PromptBuilder(
        args.ai_name,
        args.ai_role,
        tools,
        memory=memory,
        send_token_limit=send_token_limit,
        memory_token_limit=args.memory_token_limit,
    )
    model = build_model(args)
    return AgentLoop(
        model,
        builder,
        tools,
        memory=memory,
        max_iterations=args.max_iterations,
        human_in_the_loop=args.human_in_the_loop,
        replay=args.replay,
        human_input_timeout=args.human_input_timeout,
        splitter=TokenTextSplitter.for_embedding_model(args.embedding_model),
        report=report,
        verbose=args.verbose,
    )


async def _prompt_human(question: str) -> str:
    """Ask the operator on the terminal through prompt_toolkit."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText

    fmt.human_request(question)
    session = PromptSession()
    try:
        return await session.prompt_async(
            FormattedText([("bold fg:ansiyellow", "you> ")])
        )
    except EOFError:
        return ""


def _draft_plan(args) -> int:
    """Interactively refine the plan file named by --draft-plan; returns the exit code."""
    path = Path(args.draft_plan)
    try:
        markdown = path.read_text(encoding="utf-8") if path.exists() else PLAN_TEMPLATE
        plan = asyncio.run(draft_plan(Planner(build_model(args)), markdown, _prompt_human))
        path.write_text(plan, encoding="utf-8")
    except KeyboardInterrupt:
        fmt.warning("interrupted, plan not saved.")
        return EXIT_STOPPED
    except (AgentError, OSError) as e:
        fmt.error(str(e))
        return EXIT_ERROR
    print(plan)
    if args.verbose:
        fmt.info(f"Plan written to {path}")
    return EXIT_OK


def main():
    from .config import (
        apply_config_to_args,
        generate_config,
        load_config,
        resolve_api_keys,
    )

    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("metaagent")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    goals = ([args.goal] if args.goal else []) + args.extra_goals
    if args.plan:
        try:
            goals += plan_goals(parse_plan(Path(args.plan).read_text(encoding="utf-8")))
        except OSError as e:
            fmt.error(f"cannot read plan {args.plan}: {e}")
            sys.exit(EXIT_ERROR)
    if not goals and not args.draft_plan:
        parser.error("at least one goal is required")

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)
    apply_config_to_args(args, config)
    resolve_api_keys(args)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)

    if args.draft_plan:
        sys.exit(_draft_plan(args))

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            goals=goals,
            model=args.model,
            provider=args.provider,
            settings={
                "temperature": args.temperature,
                "max_output_tokens": args.max_output_tokens,
                "max_iterations": args.max_iterations,
                "send_token_limit": args.send_token_limit,
                "memory_token_limit": args.memory_token_limit,
                "human_in_the_loop": args.human_in_the_loop,
                "replay": args.replay,
                "embedding_model": args.embedding_model,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            iterations=report.max_iteration_seen,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        loop = build_loop(args, report)
        answer = asyncio.run(loop.run(goals, request_human_input=_prompt_human))
    except KeyboardInterrupt:
        fmt.warning("interrupted, agent stopped.")
        _write_report("stopped", exit_code=EXIT_STOPPED)
        sys.exit(EXIT_STOPPED)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=EXIT_ERROR, error_message=str(e))
        sys.exit(EXIT_ERROR)

    if answer is None:
        _write_report("exhausted", exit_code=EXIT_EXHAUSTED)
        fmt.warning("max iterations reached, agent stopped.")
        sys.exit(EXIT_EXHAUSTED)

    print(answer)
    if loop.outcome == "stopped":
        _write_report("stopped", answer=answer, exit_code=EXIT_STOPPED)
        sys.exit(EXIT_STOPPED)
    _write_report("finished", answer=answer, exit_code=EXIT_OK)


if __name__ == "__main__":
    main()

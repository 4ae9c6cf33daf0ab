"""Operator sessions: one agent per connection key, driven by protocol messages.

A transport (websocket, socket.io, a test) feeds inbound operations to a
Session and receives outbound events through the ``emit`` callable:

    {"type": "start", "goal": ...}
    {"type": "update", "data": {"steps": [...]}}
    {"type": "request-human-input", "content": question}
    {"type": "final-response", "content": answer}
"""

import asyncio
import logging
from collections.abc import Callable

from .agent import AgentLoop
from .report import AgentBusyError, AgentError

logger = logging.getLogger(__name__)

Emit = Callable[[dict], None]


class Session:
    """One operator connection bound to one AgentLoop."""

    def __init__(self, key: str, agent: AgentLoop, emit: Emit):
        self.key = key
        self.agent = agent
        self._emit = emit
        self._goals: list[str] = []
        self._task: asyncio.Task | None = None
        self._pending_reply: asyncio.Future | None = None
        self._unsubscribe = agent.subscribe(self._on_update)

    @property
    def active(self) -> bool:
        return self.agent.active

    @property
    def waiting_for_human(self) -> bool:
        return self._pending_reply is not None

    def _on_update(self, event: dict) -> None:
        if event["type"] in ("action:start", "action:end"):
            self._emit({"type": "update", "data": {"steps": event["steps"]}})

    async def _request_human_input(self, question: str) -> str | None:
        fut = asyncio.get_running_loop().create_future()
        self._pending_reply = fut
        self._emit({"type": "request-human-input", "content": question})
        try:
            return await fut
        finally:
            self._pending_reply = None

    async def _deliver(self, run_task: asyncio.Task) -> str | None:
        try:
            answer = await run_task
        except AgentError as e:
            logger.warning("session %s: run failed: %s", self.key, e)
            answer = f"Error: {e}"
        except Exception as e:
            logger.exception("session %s: run crashed", self.key)
            answer = f"Error: {e}"
        self._emit({"type": "final-response", "content": answer})
        return answer

    def _launch(self, goals: list[str], pending_steps=None) -> asyncio.Task:
        run_task = self.agent.start(
            goals,
            pending_steps=pending_steps,
            request_human_input=self._request_human_input,
        )
        self._goals = list(goals)
        self._emit({"type": "start", "goal": goals[0]})
        self._task = asyncio.create_task(self._deliver(run_task))
        return self._task

    # -- Inbound operations ---------------------------------------------------

    def input(self, goal: str) -> asyncio.Task:
        """Start a run for goal. Raises AgentBusyError if one is active."""
        logger.info("session %s: input %r", self.key, goal)
        return self._launch([goal])

    def reply(self, text: str) -> bool:
        """Answer an outstanding human-input request. False if none is pending."""
        fut = self._pending_reply
        if fut is None or fut.done():
            logger.debug("session %s: reply with no pending request", self.key)
            return False
        fut.set_result(text)
        return True

    def pause(self) -> None:
        self.agent.pause()

    def resume(self, steps=None, goal: str | None = None) -> asyncio.Task | None:
        """Resume a paused run, or restart an ended one replaying steps.

        Returns the delivery task when a new run was started.
        """
        if self.agent.active:
            self.agent.resume(steps)
            return None
        goals = [goal] if goal else self._goals
        if not goals:
            raise AgentError("cannot resume: no goal was ever given")
        logger.info("session %s: restarting with %d step(s)", self.key, len(steps or []))
        return self._launch(goals, pending_steps=steps)

    def stop(self, reason: str | None = None) -> None:
        self.agent.stop(reason)

    def close(self, reason: str = "disconnected") -> None:
        self.stop(reason)
        self._unsubscribe()

    async def wait(self) -> str | None:
        """Wait for the current run to deliver its final response."""
        if self._task is None:
            return None
        return await self._task


class SessionRegistry:
    """Tracks sessions by key, admitting at most one active run per key."""

    def __init__(self, agent_factory: Callable[[], AgentLoop]):
        self.agent_factory = agent_factory
        self._sessions: dict[str, Session] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def open(self, key: str, emit: Emit) -> Session:
        existing = self._sessions.get(key)
        if existing is not None:
            if existing.active:
                raise AgentBusyError(f"session {key!r} already has an active run")
            existing.close("replaced")
        session = Session(key, self.agent_factory(), emit)
        self._sessions[key] = session
        logger.info("session %s opened", key)
        return session

    def get(self, key: str) -> Session | None:
        return self._sessions.get(key)

    def close(self, key: str, reason: str = "disconnected") -> None:
        session = self._sessions.pop(key, None)
        if session is None:
            return
        session.close(reason)
        logger.info("session %s closed (%s)", key, reason)

"""Error types and JSON run report generation."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class AgentBusyError(AgentError):
    """Raised when a run is started while another one is active for the same owner."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.replayed_replies = 0
        self.replayed_results = 0
        self.parse_errors = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_iteration_seen = 0

    def _see(self, iteration: int):
        if iteration > self.max_iteration_seen:
            self.max_iteration_seen = iteration

    def record_llm_call(
        self,
        iteration: int,
        duration: float,
        token_est: int,
        *,
        replayed: bool = False,
    ):
        self._see(iteration)
        if replayed:
            self.replayed_replies += 1
        else:
            self.llm_calls += 1
            self.total_llm_time += duration
        self.events.append(
            {
                "iteration": iteration,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "replayed": replayed,
            }
        )

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        succeeded: bool,
        duration: float,
        result_length: int,
        *,
        replayed: bool = False,
        error: str | None = None,
    ):
        self._see(iteration)
        if replayed:
            self.replayed_results += 1
        else:
            self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "iteration": iteration,
            "type": "tool_call",
            "name": name,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
            "replayed": replayed,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_parse_error(self, iteration: int, reply: str):
        self._see(iteration)
        self.parse_errors += 1
        self.events.append(
            {"iteration": iteration, "type": "parse_error", "reply": reply[:500]}
        )

    def record_state(self, iteration: int, state: str, reason: str | None = None):
        event: dict = {"iteration": iteration, "type": "state", "state": state}
        if reason is not None:
            event["reason"] = reason
        self.events.append(event)

    def build_report(
        self,
        *,
        goals: list[str],
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        iterations: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "goals": list(goals),
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "iterations": iterations,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "llm_calls": self.llm_calls,
                "replayed_replies": self.replayed_replies,
                "replayed_results": self.replayed_results,
                "parse_errors": self.parse_errors,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(
        self,
        *,
        goals: list[str],
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        iterations: int,
        error_message: str | None = None,
    ) -> dict:
        """Build the report and keep it for a following write()."""
        self._last_report = self.build_report(
            goals=goals,
            model=model,
            provider=provider,
            settings=settings,
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            iterations=iterations,
            error_message=error_message,
        )
        return self._last_report

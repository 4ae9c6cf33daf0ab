"""Tool definitions, built-in tool implementations, and command dispatch."""

import asyncio
import inspect
import json
import logging
import urllib.error
import urllib.request
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from .parser import ERROR_NAME, Command

logger = logging.getLogger(__name__)

HUMAN_INPUT_TOOL_NAME = "request-human-input"

# Dispatch results that end the run instead of being fed back to the model.
EXITING = "EXITING"
EXITING_NO_INPUT = "EXITING (no human input received)"
TERMINAL_RESULTS = frozenset({EXITING, EXITING_NO_INPUT})
STOP_WORDS = frozenset({"stop", "quit"})

DEFAULT_HUMAN_INPUT_TIMEOUT = 120.0

MAX_OUTPUT_BYTES = 8 * 1024
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024

SERPER_URL = "https://google.serper.dev/search"

RequestHumanInput = Callable[[str], Awaitable[str | None]]


class Tool:
    """Something the model can invoke by name.

    args_schema maps argument names to JSON-schema property definitions;
    it is rendered into the command list of the system prompt.
    """

    name: str = ""
    description: str = ""
    args_schema: dict[str, dict] = {}

    async def call(self, args: dict[str, Any]) -> str:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class FunctionTool(Tool):
    """Wrap a plain or async function taking keyword arguments.

    Plain functions run in a worker thread so blocking I/O never stalls
    the event loop.
    """

    def __init__(
        self,
        name: str,
        description: str,
        func: Callable[..., Any],
        args_schema: dict[str, dict] | None = None,
    ):
        self.name = name
        self.description = description
        self.func = func
        self.args_schema = args_schema or {}

    async def call(self, args: dict[str, Any]) -> str:
        if inspect.iscoroutinefunction(self.func):
            result = await self.func(**args)
        else:
            result = await asyncio.to_thread(self.func, **args)
        return result if isinstance(result, str) else json.dumps(result)


class HumanInputTool(Tool):
    """Placeholder for the reserved human-input command.

    dispatch() routes this name to the caller's input channel; the tool
    exists so the command shows up in the prompt.
    """

    name = HUMAN_INPUT_TOOL_NAME
    description = (
        "You can ask a human for additional input or guidance when you think you "
        "got stuck or you are not sure what to do next. "
        "The input should be a question for the human, along with necessary context."
    )
    args_schema = {"input": {"type": "string"}}

    async def call(self, args: dict[str, Any]) -> str:
        return ""


# ---------------------------------------------------------------------------
# File store
# ---------------------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve file_path against base_dir, refusing anything outside it.

    Raises:
        ValueError: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(
            f"Path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _read_file(file_path: str, base_dir: str) -> str:
    """Read a text file from the store, or list a directory."""
    try:
        resolved = safe_resolve(file_path, base_dir)
    except ValueError as exc:
        return f"error: {exc}"

    if not resolved.exists():
        return f"error: path does not exist: {file_path}"

    if resolved.is_dir():
        entries = [
            child.name + ("/" if child.is_dir() else "")
            for child in sorted(resolved.iterdir())
        ]
        return "\n".join(entries) if entries else "(empty directory)"

    try:
        with open(resolved, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
    except PermissionError as exc:
        return f"error: {exc}"
    if b"\x00" in chunk:
        return f"error: binary file detected: {file_path}"

    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {file_path} as UTF-8: {exc}"
    except PermissionError as exc:
        return f"error: {exc}"

    output_parts = []
    total_bytes = 0
    lines = text.splitlines()
    for line in lines:
        line = line[:MAX_LINE_LENGTH]
        encoded_len = len(line.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            output_parts.append(
                f"[truncated, {len(lines) - len(output_parts)} more lines]"
            )
            break
        output_parts.append(line)
        total_bytes += encoded_len
    return "\n".join(output_parts)


def _write_file(file_path: str, text: str, base_dir: str) -> str:
    """Create or overwrite a file in the store."""
    try:
        resolved = safe_resolve(file_path, base_dir)
    except ValueError as exc:
        return f"error: {exc}"
    if resolved.is_dir():
        return f"error: {file_path} is a directory"

    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = text.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {file_path}"


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------


def _url_finder(
    query: str, api_key: str, *, gl: str = "us", hl: str = "en", timeout: int = 30
) -> str:
    """Search the web through Serper and return result URLs, comma separated."""
    payload = json.dumps({"q": query, "gl": gl, "hl": hl}).encode()
    req = urllib.request.Request(
        SERPER_URL,
        data=payload,
        headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read().decode())
    except urllib.error.HTTPError as e:
        return f"error: got {e.code} error from serper: {e.reason}"
    except urllib.error.URLError as e:
        return f"error: could not reach serper: {e.reason}"
    except json.JSONDecodeError as e:
        return f"error: invalid JSON from serper: {e}"

    links = [r["link"] for r in data.get("organic") or [] if r.get("link")]
    if not links:
        return "No good search result found"
    return ",".join(links)


def build_tools(
    base_dir: str = ".",
    *,
    serper_api_key: str | None = None,
    fetch: bool = True,
    human_in_the_loop: bool = True,
) -> list[Tool]:
    """Assemble the built-in tool list."""
    tools: list[Tool] = [
        FunctionTool(
            "read_file",
            "Read a file from the working directory. Directories are listed.",
            lambda file_path: _read_file(file_path, base_dir),
            {"file_path": {"type": "string", "description": "path relative to the working directory"}},
        ),
        FunctionTool(
            "write_file",
            "Write text to a file in the working directory, replacing it if it exists.",
            lambda file_path, text: _write_file(file_path, text, base_dir),
            {
                "file_path": {"type": "string", "description": "path relative to the working directory"},
                "text": {"type": "string", "description": "full file contents"},
            },
        ),
    ]
    if serper_api_key:
        tools.append(
            FunctionTool(
                "url-finder",
                "Find URLs on the Internet given a search query. "
                "Outputs a comma separated list of URLs.",
                lambda query: _url_finder(query, serper_api_key),
                {"query": {"type": "string", "description": "search query"}},
            )
        )
    if fetch:
        from .fetch import fetch_url

        tools.append(
            FunctionTool(
                "fetch_url",
                "Fetch a web page given ONE valid http(s) URL including the protocol "
                "and return its readable text.",
                lambda url, format="text": fetch_url(url, format=format),
                {
                    "url": {"type": "string"},
                    "format": {"type": "string", "enum": ["text", "markdown", "html"]},
                },
            )
        )
    if human_in_the_loop:
        tools.append(HumanInputTool())
    return tools


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def _ask_human(
    question: str,
    request_human_input: RequestHumanInput | None,
    timeout: float | None,
) -> str:
    if request_human_input is None:
        return EXITING_NO_INPUT
    try:
        answer = await asyncio.wait_for(request_human_input(question), timeout)
    except asyncio.TimeoutError:
        logger.info("no human input within %ss", timeout)
        return EXITING_NO_INPUT
    except Exception:
        logger.warning("human input channel failed", exc_info=True)
        return EXITING_NO_INPUT
    if answer is None or not answer.strip():
        return EXITING_NO_INPUT
    if answer.strip().lower() in STOP_WORDS:
        return EXITING
    return f"Command {HUMAN_INPUT_TOOL_NAME} returned: {answer}"


async def dispatch(
    command: Command,
    tools: list[Tool],
    request_human_input: RequestHumanInput | None = None,
    *,
    human_input_timeout: float | None = DEFAULT_HUMAN_INPUT_TIMEOUT,
) -> str:
    """Execute one command and return the observation text. Never raises.

    A human-input request that times out, comes back empty, or asks to
    stop returns one of TERMINAL_RESULTS; the caller ends the run on those.
    """
    registry = {tool.name: tool for tool in tools}

    if command.name == HUMAN_INPUT_TOOL_NAME and command.name in registry:
        question = str(command.args.get("input", ""))
        return await _ask_human(question, request_human_input, human_input_timeout)

    if command.name in registry:
        tool = registry[command.name]
        try:
            observation = await tool.call(command.args)
        except Exception as e:
            logger.debug("tool %s raised", command.name, exc_info=True)
            observation = f"Error: {e}"
        return f"Command {tool.name} returned: {observation}"

    if command.name == ERROR_NAME:
        return f"Error: {command.args}. "

    return (
        f"Unknown command '{command.name}'. Please refer to the 'COMMANDS' list "
        "for available commands and only respond in the specified JSON format."
    )

"""Tolerant parser turning free-form model replies into structured commands."""

import json
import re
from dataclasses import dataclass, field
from typing import Any

FINISH_NAME = "finish"
ERROR_NAME = "ERROR"

# A backslash that is neither escaped itself nor starting a valid JSON escape.
_INVALID_ESCAPE_RE = re.compile(r'(?<!\\)\\(?!["\\/bfnrt]|u[0-9a-fA-F]{4})')


@dataclass
class Command:
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"name": self.name, "args": self.args}


@dataclass
class Reply:
    """A parsed model reply: the command to run plus optional thoughts."""

    command: Command
    thoughts: Any = None

    def to_dict(self) -> dict:
        data: dict = {"command": self.command.to_dict()}
        if self.thoughts is not None:
            data["thoughts"] = self.thoughts
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Reply":
        command = data.get("command") or {}
        return cls(
            command=Command(
                name=command.get("name") or ERROR_NAME,
                args=dict(command.get("args") or {}),
            ),
            thoughts=data.get("thoughts"),
        )

    @property
    def is_error(self) -> bool:
        return self.command.name == ERROR_NAME


def error_reply(message: str) -> Reply:
    return Reply(command=Command(name=ERROR_NAME, args={"error": message}))


def preprocess_json_input(text: str) -> str:
    """Double every backslash that does not start a valid JSON escape.

    Models often emit raw Windows paths or regexes inside JSON strings,
    which json.loads rejects.
    """
    return _INVALID_ESCAPE_RE.sub(lambda _m: "\\\\", text)


def _loads_object(text: str) -> dict:
    try:
        value = json.loads(text)
    except RecursionError as e:
        raise ValueError(f"JSON nested too deeply: {e}") from e
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


def rescue_json(text: str) -> dict:
    """Parse the span between the first '{' and the last '}'."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("no JSON object found")
    return _loads_object(text[start : end + 1])


def _shape(parsed: dict) -> Reply:
    command = parsed.get("command")
    if not isinstance(command, dict):
        return error_reply(f"Incomplete command args: {json.dumps(parsed)}")
    name = command.get("name")
    args = command.get("args")
    if name is None and args is None:
        return error_reply(f"Incomplete command args: {json.dumps(parsed)}")
    if not isinstance(name, str) or not name.strip():
        return error_reply(f"Missing command name: {json.dumps(parsed)}")
    if args is None:
        args = {}
    if not isinstance(args, dict):
        return error_reply(
            f"Command args must be a JSON object, got: {json.dumps(args)}"
        )
    return Reply(
        command=Command(name=name.strip(), args=args),
        thoughts=parsed.get("thoughts"),
    )


def parse_reply(text: str) -> Reply:
    """Parse a model reply into a Reply. Never raises.

    Tries, in order: direct parse, parse after escape repair, and parse of
    the outermost brace span of the repaired text. Every failure becomes an
    ERROR command whose args carry a diagnostic.
    """
    if text is None:
        text = ""
    elif not isinstance(text, str):
        text = str(text)

    try:
        parsed = _loads_object(text)
    except ValueError:
        repaired = preprocess_json_input(text)
        try:
            parsed = _loads_object(repaired)
        except ValueError:
            try:
                parsed = rescue_json(repaired)
            except ValueError:
                return error_reply(f"Could not parse invalid json: {text}")
    return _shape(parsed)


class OutputParser:
    """Object form of parse_reply, so the loop can take a custom parser."""

    def parse(self, text: str) -> Reply:
        return parse_reply(text)

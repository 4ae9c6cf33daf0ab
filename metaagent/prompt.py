"""Prompt assembly under a token budget: persona, goals, commands, memory, history."""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import tiktoken

from .memory import MemoryStore
from .parser import FINISH_NAME

logger = logging.getLogger(__name__)

_encoder = tiktoken.get_encoding("cl100k_base")

USER_INPUT_NEXT_STEP = (
    "Determine which next command to use, and respond using the JSON format "
    "specified above:"
)

DEFAULT_SEND_TOKEN_LIMIT = 4196
DEFAULT_MEMORY_TOKEN_LIMIT = 2500
DEFAULT_MODEL_CONTEXT_SIZE = 4097
HISTORY_WINDOW = 10
# Room left for the final user message and the model's answer.
HISTORY_RESERVE = 1000

MODEL_CONTEXT_SIZES = {
    "gpt-3.5-turbo-16k": 16384,
    "gpt-3.5-turbo": 4096,
    "gpt-4-32k": 32768,
    "gpt-4": 8192,
    "text-davinci-003": 4097,
    "text-davinci-002": 4097,
    "code-davinci-002": 8000,
    "text-curie-001": 2048,
    "text-babbage-001": 2048,
    "text-ada-001": 2048,
    "code-cushman-001": 2048,
}

PROMPT_START = (
    "Please always follow the response format specified at the end of this "
    "message, including your first response.\n"
    "Play to your strengths as an LLM and pursue simple strategies with no "
    "legal complications.\n"
    "Use your best judgement on when to make decisions independently or seek "
    "user assistance.\n"
    'If you have completed all your tasks, make sure to use the "finish" command.'
)

CONSTRAINTS = [
    "~4000 word limit for short term memory. Your short term memory is short, "
    "so immediately save important information to files.",
    "If you are unsure how you previously did something or want to recall past "
    "events, thinking about similar events will help you remember.",
    "No user assistance",
    'Exclusively use the commands listed in double quotes e.g. "command name"',
]

RESOURCES = [
    "Internet access for searches and information gathering.",
    "Long Term memory management.",
    "File output.",
]

PERFORMANCE_EVALUATIONS = [
    "Continuously review and analyze your actions to ensure you are performing "
    "to the best of your abilities.",
    "Constructively self-criticize your big-picture behavior constantly.",
    "Reflect on past decisions and strategies to refine your approach.",
    "Every command has a cost, so be smart and efficient. Aim to complete tasks "
    "in the least number of steps.",
]

RESPONSE_FORMAT = {
    "thoughts": {
        "text": "thought",
        "reasoning": "reasoning",
        "plan": "- short bulleted\n- list that conveys\n- long-term plan",
        "criticism": "constructive self-criticism",
        "speak": "thoughts summary to say to user",
    },
    "command": {"name": "command name", "args": {"arg name": "value"}},
}

TokenCounter = Callable[[str], int]


@dataclass
class Message:
    role: str  # "human", "ai" or "system"
    content: str

    _LLM_ROLES = {"human": "user", "ai": "assistant", "system": "system"}

    def to_llm(self) -> dict:
        return {"role": self._LLM_ROLES[self.role], "content": self.content}

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


def count_tokens(text: str) -> int:
    return len(_encoder.encode(text, disallowed_special=()))


def estimate_tokens(messages: list[Message]) -> int:
    """Approximate prompt size, with ~4 tokens of per-message overhead."""
    return sum(count_tokens(m.content) for m in messages) + 4 * len(messages)


def get_model_context_size(model: str | None) -> int:
    """Context window of a known model; 4097 with a warning otherwise."""
    name = (model or "").rsplit("/", 1)[-1]
    if name in MODEL_CONTEXT_SIZES:
        return MODEL_CONTEXT_SIZES[name]
    for prefix, size in MODEL_CONTEXT_SIZES.items():
        if name.startswith(prefix + "-"):
            return size
    logger.warning(
        "unknown model %r, using default context size %d",
        model,
        DEFAULT_MODEL_CONTEXT_SIZE,
    )
    return DEFAULT_MODEL_CONTEXT_SIZE


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


def generate_command_spec(tools) -> str:
    """Render constraints, the command list, resources and the reply format."""
    commands = []
    for tool in tools:
        schema = json.dumps(tool.args_schema)
        commands.append(f'"{tool.name}": {tool.description}, args json schema: {schema}')
    commands.append(
        f'"{FINISH_NAME}": use this to signal that you have finished all your '
        'objectives, args: "response": "final response to let people know you '
        'have finished your objectives"'
    )
    format_json = json.dumps(RESPONSE_FORMAT, indent=4)
    return (
        f"Constraints:\n{_numbered(CONSTRAINTS)}\n\n"
        f"Commands:\n{_numbered(commands)}\n\n"
        f"Resources:\n{_numbered(RESOURCES)}\n\n"
        f"Performance Evaluation:\n{_numbered(PERFORMANCE_EVALUATIONS)}\n\n"
        "You should only respond in JSON format as described below \n"
        f"Response Format: \n{format_json} \n"
        "Ensure the response can be parsed by Python json.loads"
    )


class PromptBuilder:
    """Assemble the message list sent to the model on each iteration.

    The output is always [system prompt, time, memory, *history, user input].
    History is windowed to the last HISTORY_WINDOW messages and then trimmed
    from the oldest end so that everything before the user input fits within
    send_token_limit - HISTORY_RESERVE. The stored history is never modified.
    """

    def __init__(
        self,
        ai_name: str,
        ai_role: str,
        tools: list,
        token_counter: TokenCounter = count_tokens,
        memory: MemoryStore | None = None,
        send_token_limit: int | None = None,
        memory_token_limit: int = DEFAULT_MEMORY_TOKEN_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ):
        self.ai_name = ai_name
        self.ai_role = ai_role
        self.tools = tools
        self.token_counter = token_counter
        self.memory = memory
        self.send_token_limit = send_token_limit or DEFAULT_SEND_TOKEN_LIMIT
        self.memory_token_limit = memory_token_limit
        self.clock = clock or datetime.now

    def construct_full_prompt(self, goals: list[str]) -> str:
        goal_lines = "".join(f"{i}. {goal}\n" for i, goal in enumerate(goals, 1))
        return (
            f"You are {self.ai_name}, {self.ai_role}\n{PROMPT_START}\n\n"
            f"GOALS:\n\n{goal_lines}\n\n{generate_command_spec(self.tools)}"
        )

    async def _relevant_memory(self, history: list[Message], used: int) -> list[str]:
        if self.memory is None:
            return []
        query = json.dumps([m.to_dict() for m in history[-HISTORY_WINDOW:]])
        docs = [d.content for d in await self.memory.relevant(query)]
        sizes = [self.token_counter(d) for d in docs]
        # Candidates arrive most relevant first, so the tail goes first.
        while docs and used + sum(sizes) > self.memory_token_limit:
            docs.pop()
            sizes.pop()
        return docs

    async def build(
        self, goals: list[str], history: list[Message], user_input: str
    ) -> list[Message]:
        base = Message("system", self.construct_full_prompt(goals))
        now = self.clock().strftime("%c")
        time_msg = Message("system", f"The current time and date is {now}")
        used = self.token_counter(base.content) + self.token_counter(time_msg.content)

        docs = await self._relevant_memory(history, used)
        memory_msg = Message(
            "system",
            "This reminds you of these events from your past:\n"
            + "\n".join(docs)
            + "\n\n",
        )
        used += self.token_counter(memory_msg.content)

        budget = self.send_token_limit - HISTORY_RESERVE
        admitted: list[Message] = []
        for message in reversed(history[-HISTORY_WINDOW:]):
            tokens = self.token_counter(message.content)
            if used + tokens > budget:
                break
            used += tokens
            admitted.append(message)
        admitted.reverse()

        return [base, time_msg, memory_msg, *admitted, Message("human", user_input)]

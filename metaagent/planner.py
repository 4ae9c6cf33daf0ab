"""Plan drafting: a clarify/polish conversation over a markdown plan document.

A plan is a markdown document of ``## Heading`` sections. A section holds
either free text or a ``- item`` list:

    ## TBD
    - location_of_user

    ## Goals
    - find a good restaurant near {location_of_user}

The planner asks the model what is still unclear, feeds the operator's
answers back, and finally asks for a polished plan with a Steps section.
The Goals section of a plan becomes the agent's goals.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .prompt import Message
from .tools import STOP_WORDS

logger = logging.getLogger(__name__)

Model = Callable[[list[Message]], Awaitable[str]]
Ask = Callable[[str], Awaitable[str | None]]

PLAN_TEMPLATE = """## TBD
-

## Goals

## Description

## Constraints

## Tools
- url-finder: a search engine. Useful when you need to answer questions about current events. Input should be a search query.
- fetch_url: fetch a web page and return its readable text.
"""

FORMAT_EXPLANATION = """The User will provide you with a Markdown document wrapped as a code block, which contains:
To-be-decided elements (under ## TBD),
GOALS (under ## Goals),
DESCRIPTION (under ## Description),
CONSTRAINTS (under ## Constraints),
and TOOLS (under ## Tools).
TBD contains a list of elements that are not decided yet, and will be provided before execution of the plan.
If you need to refer to a TBD element, you can use curly braces to refer to it, e.g. {location_of_user}.
TOOLS contains a list of tools and their descriptions that your fellow AI workers can use to achieve the goals."""

READY_REPLY = "I believe we are ready to make a good plan"

SYSTEM_PROMPT = f"""You are PlannerGPT, an AI that helps User to create solid plans that can be executed later by your fellow AI workers.
{FORMAT_EXPLANATION}
The User may ask you to do the following:
1. Ask a question to clarify the plan, especially the TBD elements and description. In this case, your response should either be a question, or "{READY_REPLY}" if you believe there's no more unclear areas.
2. Polish the plan based on the provided information and your conversation with the User. Your response should be the polished plan in the exact same format as the Markdown document provided by the User, with an additional "Steps" part at the end.
"""

CLARIFY_PROMPT = "Is there anything still unclear about the plan?"

POLISH_PROMPT = (
    "Please polish the plan based on the provided information and your conversation "
    "with me. Your response should be the polished plan in the exact same format as "
    "the Markdown document provided by me earlier."
)

DEFAULT_CLARIFY_ROUNDS = 5

_FENCE_RE = re.compile(r"```(?:[\w-]*\n)?(.*?)```", re.DOTALL)


# ---------------------------------------------------------------------------
# Plan documents
# ---------------------------------------------------------------------------


@dataclass
class PlanSection:
    """One ``## Heading`` block: free text, or a list when it has ``- `` items."""

    content: str | None = None
    items: list[str] | None = None


def parse_plan(markdown: str) -> dict[str, PlanSection]:
    """Parse a plan document into sections keyed by heading, in document order.

    Text before the first heading is ignored. A section with any ``- ``
    line is a list and its other lines are dropped.
    """
    plan: dict[str, PlanSection] = {}
    heading = None
    items: list[str] = []
    text: list[str] = []

    def flush():
        if heading is None:
            return
        if items:
            plan[heading] = PlanSection(items=list(items))
        else:
            plan[heading] = PlanSection(content="\n".join(text).strip())

    for line in markdown.split("\n"):
        if line.startswith("## "):
            flush()
            heading = line[3:].strip()
            items = []
            text = []
        elif line.startswith("- "):
            items.append(line[2:].strip())
        else:
            text.append(line)
    flush()
    return plan


def render_plan(plan: dict[str, PlanSection]) -> str:
    parts = []
    for heading, section in plan.items():
        parts.append(f"## {heading}\n")
        if section.content is not None:
            parts.append(section.content + "\n\n")
        elif section.items is not None:
            parts.extend(f"- {item}\n" for item in section.items)
            parts.append("\n")
    return "".join(parts)


def plan_goals(plan: dict[str, PlanSection]) -> list[str]:
    """Goals of a plan: the items of its Goals section, or its non-empty lines."""
    for heading, section in plan.items():
        if heading.lower() != "goals":
            continue
        if section.items is not None:
            return [item for item in section.items if item]
        return [line.strip() for line in (section.content or "").splitlines() if line.strip()]
    return []


def extract_markdown(text: str) -> str:
    """Return the body of the first fenced code block in text, or "" if there is none."""
    match = _FENCE_RE.search(text)
    if match is None:
        logger.warning("no fenced plan found in model reply")
        return ""
    return match.group(1)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Planner:
    """Clarify-then-polish conversation with the model about one plan."""

    def __init__(self, model: Model):
        self.model = model
        self.history: list[Message] = []
        self.plan = ""
        self.reset()

    def reset(self, messages: list[Message] | None = None) -> None:
        self.history = [Message("system", SYSTEM_PROMPT), *(messages or [])]

    async def clarify(self, text: str = "") -> str:
        """Send text with the clarifying question; returns the model's question or READY_REPLY."""
        message = Message("human", f"{text} \n{CLARIFY_PROMPT}")
        reply = await self.model([*self.history, message])
        self.history.extend([message, Message("ai", reply)])
        return reply

    async def polish(self, text: str = "") -> str:
        """Ask for the polished plan and restart the conversation from it.

        The model's full reply is returned. The fenced plan inside it is
        kept in ``self.plan`` and becomes the only human message of the
        new conversation.
        """
        message = Message("human", f"{text} \n{POLISH_PROMPT}")
        reply = await self.model([*self.history, message])
        self.plan = extract_markdown(reply)
        self.reset([Message("human", f"```\n{self.plan}```\n")])
        return reply

    @staticmethod
    def is_ready(reply: str) -> bool:
        return READY_REPLY.lower() in reply.lower()


async def draft_plan(
    planner: Planner,
    markdown: str,
    ask: Ask,
    *,
    max_rounds: int = DEFAULT_CLARIFY_ROUNDS,
) -> str:
    """Run clarify rounds until the model is ready, then polish and return the plan.

    Each model question goes to ``ask``. An empty answer or a stop word ends
    the clarifying early. Falls back to the draft when the polished reply
    carries no fenced plan.
    """
    text = f"```\n{markdown}```\n"
    for _ in range(max_rounds):
        question = await planner.clarify(text)
        if planner.is_ready(question):
            break
        answer = await ask(question)
        if answer is None or not answer.strip() or answer.strip().lower() in STOP_WORDS:
            break
        text = answer
    else:
        logger.info("plan still unclear after %d round(s), polishing anyway", max_rounds)
    await planner.polish()
    return planner.plan or markdown

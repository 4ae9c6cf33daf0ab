"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Iteration structure -----------------------------------------------------


def iteration_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Iteration {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float) -> None:
    _console.print(Text(f"  LLM responded in {elapsed:.1f}s", style="green"))


def replayed(what: str) -> None:
    _console.print(Text(f"  ↻ replayed {what} from pending step", style="cyan"))


def completion(iterations: int, outcome: str) -> None:
    if outcome == "finished":
        _console.print(
            Text(f"  ✓ Agent finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Agent finished: {iterations} iterations, outcome={outcome}",
                style="bold red",
            )
        )


def state_change(state: str, reason: str | None = None) -> None:
    text = f"  [state] {state}"
    if reason:
        text += f" ({reason})"
    _console.print(Text(text, style="magenta"))


# -- Commands ----------------------------------------------------------------


def command(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def parse_error(preview: str) -> None:
    line = Text()
    line.append("  ⚠ Unparsable reply: ", style="yellow")
    line.append(preview, style="dim")
    _console.print(line)


def thoughts(text: str) -> None:
    line = Text()
    line.append("  [thoughts] ", style="blue")
    line.append(text)
    _console.print(line)


def human_request(question: str) -> None:
    header = Text()
    header.append("  ? ", style="bold yellow")
    header.append(question, style="yellow")
    _console.print(header)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)

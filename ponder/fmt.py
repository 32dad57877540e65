"""Terminal output using Rich.

Conversation output (assistant text, reasoning, tool activity) goes to
stdout; diagnostics go to stderr.
"""

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from .stages import STAGE_VISUALS, Stage

_out = Console()
_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _out, _console
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _out = Console(**kwargs)
    _console = Console(stderr=True, **kwargs)


def _write(text: Text) -> None:
    _out.print(text, end="", soft_wrap=True)


# -- Session -----------------------------------------------------------------


def banner(message: str) -> None:
    _out.print(
        Panel(
            Text(message, style="bold"),
            box=box.ROUNDED,
            border_style="cyan",
            padding=(0, 1),
            expand=False,
        )
    )
    _out.print()


def repl_help() -> None:
    info(
        "Available commands:\n"
        "  /help          Show this help message\n"
        "  /clear         Start a new conversation\n"
        "  /exit, /quit   Exit"
    )


# -- Assistant text ----------------------------------------------------------


def assistant_label() -> None:
    text = Text("\n")
    text.append("Assistant", style="bold green")
    text.append(" \u203a ", style="dim")
    _write(text)


def assistant_stream(delta: str) -> None:
    _write(Text(delta))


def end_turn() -> None:
    _out.print()


# -- Reasoning ---------------------------------------------------------------


def reasoning_header(stage: Stage) -> None:
    visual = STAGE_VISUALS[stage]
    text = Text("\n")
    text.append("\U0001f4ad ", style="dim")
    text.append(f"{visual.icon} ")
    text.append(visual.label, style=f"bold {visual.style}")
    text.append("\n")
    _write(text)


def reasoning_stream(delta: str, stage: Stage) -> None:
    _write(Text(delta, style=f"dim {STAGE_VISUALS[stage].style}"))


def reasoning_end() -> None:
    _write(Text("\n"))


def reasoning_summary(stages: list[Stage], elapsed: float) -> None:
    text = Text("\n")
    text.append("\U0001f4ad ", style="dim")
    for i, stage in enumerate(stages):
        if i:
            text.append(" \u2192 ", style="dim")
        visual = STAGE_VISUALS[stage]
        text.append(visual.label, style=f"dim {visual.style}")
    text.append(f" ({elapsed:.1f}s)\n", style="dim")
    _write(text)


# -- Tool calls --------------------------------------------------------------


def tool_start(name: str) -> None:
    line = Text("\n")
    line.append("\u26a1 ", style="yellow")
    line.append("Calling ", style="dim")
    line.append(name, style="bold yellow")
    _out.print(line)


def tool_end(name: str, success: bool) -> None:
    line = Text()
    if success:
        line.append("\u2713 ", style="green")
        line.append("Finished ", style="dim")
        line.append(name, style="green")
    else:
        line.append("\u2717 ", style="red")
        line.append("Failed ", style="dim")
        line.append(name, style="red")
    _out.print(line)


# -- Diagnostics -------------------------------------------------------------


def request_header(n: int, token_est: int) -> None:
    _console.print(Rule(f"Request {n} (~{token_est} tokens)", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def info(msg: str) -> None:
    _console.print(Text(f"\u2139 {msg}", style="cyan"))


def warning(msg: str) -> None:
    line = Text()
    line.append("\u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("\u2716 Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)

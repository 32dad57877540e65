"""Agent loop and CLI entry point."""

import argparse
import asyncio
import logging
import sys
import time
from enum import Enum
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _UNSET,
    AgentConfig,
    apply_config_to_args,
    config_from_args,
    generate_config,
    load_config,
)
from .conversation import ConversationState, TextBlock, ThinkingBlock, estimate_tokens
from .errors import AgentError, ConversationError, TransportError
from .presenter import Presenter, TerminalPresenter
from .provider import InferenceRequest, stream_completion
from .stream import StreamDemultiplexer, StreamResult
from .tools import ToolDispatcher, ToolRegistry, builtin_tools

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """\
You are a helpful assistant working in a local project directory. Think \
through problems before answering. Use the available tools to inspect files, \
search code, make edits and run commands when that helps; paths are relative \
to the project directory. When a tool fails, read the error and adjust. Keep \
final answers concise."""

BANNER = "ponder \u00b7 an assistant that thinks out loud\nType /help for commands, /exit to quit."


class LoopState(Enum):
    AWAITING_INPUT = "awaiting_input"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    DISPATCHING = "dispatching"


class AgentLoop:
    """Drives one conversation through Requesting, Streaming and Dispatching.

    A user turn ends only when the model answers without calling a tool.
    There is no cap on the number of tool round-trips per user turn.
    """

    def __init__(
        self,
        config: AgentConfig,
        registry: ToolRegistry,
        presenter: Presenter,
        *,
        stream_fn=stream_completion,
        read_input=None,
    ):
        self.config = config
        self.registry = registry
        self.presenter = presenter
        self.stream_fn = stream_fn
        self.read_input = read_input
        self.dispatcher = ToolDispatcher(registry, presenter)
        self.conversation = ConversationState(
            system_prompt=config.system_prompt or DEFAULT_SYSTEM_PROMPT
        )
        self.state = LoopState.AWAITING_INPUT
        self.requests = 0

    def clear(self) -> None:
        """Start a fresh conversation. The old one is discarded, not mutated."""
        self.conversation = ConversationState(
            system_prompt=self.conversation.system_prompt
        )

    def build_request(self) -> InferenceRequest:
        return InferenceRequest(
            model=self.config.model,
            max_output_tokens=self.config.max_output_tokens,
            messages=self.conversation.to_messages(),
            tools=self.registry.schemas(),
            reasoning_budget=(
                self.config.reasoning_budget_tokens
                if self.config.enable_reasoning
                else None
            ),
            temperature=self.config.temperature,
        )

    async def _request(self) -> StreamResult:
        self.state = LoopState.REQUESTING
        request = self.build_request()
        self.requests += 1
        if self.config.verbose:
            fmt.request_header(
                self.requests, estimate_tokens(request.messages, request.tools)
            )

        self.presenter.assistant_turn_started()
        demux = StreamDemultiplexer(
            self.presenter, collapsed=self.config.collapse_reasoning
        )
        t0 = time.monotonic()
        self.state = LoopState.STREAMING
        async for event in self.stream_fn(request, **self.config.llm_kwargs):
            demux.feed(event)
        result = demux.finish()

        if self.config.verbose:
            fmt.llm_timing(time.monotonic() - t0, result.finish_reason)
        if result.anomalies:
            logger.debug(
                "request %d finished with %d protocol anomalies",
                self.requests,
                len(result.anomalies),
            )
        return result

    async def run_turn(self, text: str) -> str | None:
        """Run one user turn to completion.

        Returns the final assistant text, or None when the turn was aborted
        by a transport failure or a malformed response. Completed turns
        already appended stay in the conversation; a partially streamed or
        rejected response is never appended.
        """
        self.conversation.append_user_text(text)
        try:
            while True:
                result = await self._request()

                blocks = [
                    b
                    for b in result.blocks
                    if not isinstance(b, ThinkingBlock)
                    and not (isinstance(b, TextBlock) and not b.value)
                ]
                if blocks:
                    self.conversation.append_assistant(blocks)

                tool_uses = result.tool_uses
                if not tool_uses:
                    return result.text

                self.state = LoopState.DISPATCHING
                outcomes = await self.dispatcher.dispatch_all(tool_uses)
                self.conversation.append_tool_results(
                    [outcome.to_block() for outcome in outcomes]
                )
        except (TransportError, ConversationError) as e:
            logger.debug("turn aborted: %s", e)
            self.presenter.error_raised(str(e))
            return None
        finally:
            self.state = LoopState.AWAITING_INPUT
            self.presenter.turn_finished()

    async def _prompt(self) -> str:
        if self.read_input is None:
            from prompt_toolkit import PromptSession
            from prompt_toolkit.formatted_text import FormattedText

            session = PromptSession()
            prompt_text = FormattedText(
                [("bold fg:ansiblue", "You"), ("fg:ansibrightblack", " \u203a ")]
            )

            async def read_input():
                return await session.prompt_async(prompt_text)

            self.read_input = read_input
        return await self.read_input()

    async def run(self) -> None:
        """Interactive read-eval-print loop."""
        self.presenter.banner_shown(BANNER)

        while True:
            try:
                line = await self._prompt()
            except (EOFError, KeyboardInterrupt):
                break

            line = line.strip()
            if not line:
                continue

            # Only known commands are intercepted; anything else goes to the model.
            cmd = line.split(None, 1)[0].lower()
            if cmd in ("/exit", "/quit"):
                break
            if cmd == "/help":
                fmt.repl_help()
                continue
            if cmd == "/clear":
                self.clear()
                fmt.info("conversation cleared.")
                continue

            await self.run_turn(line)


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="ponder",
        usage="%(prog)s [options] [question]",
        description="A streaming command-line assistant that shows its reasoning as it thinks.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Answer a single question and exit instead of starting a session.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=_UNSET,
        help="Show request headers, timing and debug logging on stderr.",
    )

    reasoning = parser.add_argument_group("reasoning")
    reasoning.add_argument(
        "--no-thinking",
        action="store_true",
        default=_UNSET,
        help="Disable extended thinking.",
    )
    reasoning.add_argument(
        "--collapse-reasoning",
        action="store_true",
        default=_UNSET,
        help="Show a one-line stage summary instead of live reasoning text.",
    )
    reasoning.add_argument(
        "--reasoning-budget",
        dest="reasoning_budget_tokens",
        type=int,
        default=_UNSET,
        metavar="N",
        help="Token budget for thinking (default: 10000, minimum 1024).",
    )

    model = parser.add_argument_group("model")
    model.add_argument(
        "--model",
        default=_UNSET,
        help="litellm model string (default: anthropic/claude-sonnet-4-20250514).",
    )
    model.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    model.add_argument(
        "--base-url",
        default=_UNSET,
        help="Custom API base URL.",
    )
    model.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        metavar="N",
        help="Maximum output tokens per response (default: 16000).",
    )
    model.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature, used only when thinking is disabled.",
    )
    model.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )

    parser.add_argument(
        "--base-dir",
        default=".",
        help="Directory the file tools operate in, and where ponder.toml is read (default: .).",
    )
    parser.add_argument(
        "--no-bash",
        action="store_true",
        default=_UNSET,
        help="Do not offer the bash tool to the model.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when output is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a template config file and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, label the template for <base-dir>/ponder.toml.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("ponder")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)

    if not Path(args.base_dir).is_dir():
        parser.error(f"--base-dir {args.base_dir!r} is not a directory")

    try:
        apply_config_to_args(args, load_config(Path(args.base_dir)))
        config = config_from_args(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    fmt.init(color=args.color, no_color=args.no_color)
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if not config.verbose:
        # litellm and httpx log request chatter at INFO.
        for name in ("LiteLLM", "httpx"):
            logging.getLogger(name).setLevel(logging.WARNING)

    if config.temperature is not None and config.enable_reasoning:
        fmt.warning("temperature is ignored while thinking is enabled")

    registry = ToolRegistry(
        builtin_tools(config.base_dir, allow_bash=config.allow_bash)
    )
    loop = AgentLoop(
        config,
        registry,
        TerminalPresenter(collapsed=config.collapse_reasoning),
        stream_fn=stream_completion,
    )
    logger.debug(
        "model=%s reasoning=%s budget=%d tools=%s",
        config.model,
        config.enable_reasoning,
        config.reasoning_budget_tokens,
        registry.names(),
    )

    try:
        if args.question is not None:
            answer = asyncio.run(loop.run_turn(args.question))
            sys.exit(0 if answer is not None else 1)
        asyncio.run(loop.run())
    except KeyboardInterrupt:
        print(file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()

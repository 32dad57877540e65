"""Tests for the agent loop: request/stream/dispatch cycling and the REPL."""

import asyncio
from io import StringIO

import pytest
from rich.console import Console

from ponder import fmt
from ponder.agent import DEFAULT_SYSTEM_PROMPT, AgentLoop, LoopState, build_parser
from ponder.config import AgentConfig
from ponder.conversation import ConversationState, TextBlock, ToolResultBlock
from ponder.errors import ConversationError, TransportError
from ponder.presenter import Presenter, TerminalPresenter
from ponder.stream import BlockDelta, BlockKind, BlockStart, BlockStop, MessageStop
from ponder.tools import Tool, ToolRegistry

TEXT = BlockKind.TEXT
THINKING = BlockKind.THINKING
TOOL = BlockKind.TOOL_USE


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def text_response(text, thinking=None):
    events = []
    index = 0
    if thinking:
        events += [BlockStart(0, THINKING), BlockDelta(0, THINKING, thinking), BlockStop(0)]
        index = 1
    events += [BlockStart(index, TEXT), BlockDelta(index, TEXT, text), BlockStop(index)]
    return events + [MessageStop("stop")]


def tool_response(*calls, text=None):
    """calls: (id, name, raw_json) tuples."""
    events = []
    index = 0
    if text:
        events += [BlockStart(0, TEXT), BlockDelta(0, TEXT, text), BlockStop(0)]
        index = 1
    for offset, (tool_id, name, raw) in enumerate(calls):
        i = index + offset
        events += [
            BlockStart(i, TOOL, tool_use_id=tool_id, name=name),
            BlockDelta(i, TOOL, raw),
            BlockStop(i),
        ]
    return events + [MessageStop("tool_calls")]


class ScriptedStream:
    """stream_fn stand-in that replays one scripted response per request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.kwargs = []

    def __call__(self, request, **kwargs):
        self.requests.append(request)
        self.kwargs.append(kwargs)
        response = self.responses.pop(0)

        async def gen():
            if isinstance(response, Exception):
                raise response
            for event in response:
                if isinstance(event, Exception):
                    raise event
                yield event

        return gen()


class RecordingPresenter(Presenter):
    def __init__(self):
        self.calls = []

    def banner_shown(self, message):
        self.calls.append(("banner",))

    def text_appended(self, delta):
        self.calls.append(("text", delta))

    def reasoning_started(self, stage):
        self.calls.append(("reasoning_started", stage))

    def tool_started(self, name):
        self.calls.append(("tool_started", name))

    def tool_finished(self, name, success):
        self.calls.append(("tool_finished", name, success))

    def turn_finished(self):
        self.calls.append(("turn_finished",))

    def error_raised(self, message):
        self.calls.append(("error", message))


def _registry(log=None):
    async def echo(args):
        if log is not None:
            log.append(args.get("text"))
        return f"echo {args.get('text')}"

    async def explode(args):
        raise RuntimeError("kaboom")

    schema = {"type": "object", "properties": {}, "required": []}
    return ToolRegistry(
        [
            Tool("echo", "Echo text back.", schema, echo),
            Tool("explode", "Always fails.", schema, explode),
        ]
    )


def _loop(stream, registry=None, **config):
    presenter = RecordingPresenter()
    loop = AgentLoop(
        AgentConfig(**config),
        registry if registry is not None else _registry(),
        presenter,
        stream_fn=stream,
    )
    return loop, presenter


# ---------------------------------------------------------------------------
# run_turn
# ---------------------------------------------------------------------------


class TestFinalAnswer:
    def test_single_request(self):
        stream = ScriptedStream(text_response("Hello world", thinking="let me plan"))
        loop, presenter = _loop(stream)
        answer = asyncio.run(loop.run_turn("hi"))

        assert answer == "Hello world"
        assert len(stream.requests) == 1
        assert [t.role for t in loop.conversation.turns] == ["user", "assistant"]
        # thinking is shown but never stored
        assert loop.conversation.turns[1].blocks == (TextBlock("Hello world"),)
        assert presenter.calls[-1] == ("turn_finished",)
        assert loop.state is LoopState.AWAITING_INPUT

    def test_request_contents(self):
        stream = ScriptedStream(text_response("ok"))
        loop, _ = _loop(
            stream,
            model="anthropic/x",
            max_output_tokens=4000,
            reasoning_budget_tokens=2000,
            api_key="sk-1",
        )
        asyncio.run(loop.run_turn("hi"))

        request = stream.requests[0]
        assert request.model == "anthropic/x"
        assert request.max_output_tokens == 4000
        assert request.reasoning_budget == 2000
        assert request.messages == [
            {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": "hi"},
        ]
        assert [t["function"]["name"] for t in request.tools] == ["echo", "explode"]
        assert stream.kwargs[0] == {"api_key": "sk-1", "base_url": None}

    def test_reasoning_disabled_omits_budget(self):
        stream = ScriptedStream(text_response("ok"))
        loop, _ = _loop(stream, enable_reasoning=False)
        asyncio.run(loop.run_turn("hi"))
        assert stream.requests[0].reasoning_budget is None

    def test_custom_system_prompt(self):
        stream = ScriptedStream(text_response("ok"))
        loop, _ = _loop(stream, system_prompt="be terse")
        asyncio.run(loop.run_turn("hi"))
        assert stream.requests[0].messages[0]["content"] == "be terse"

    def test_empty_response_not_appended(self):
        stream = ScriptedStream([MessageStop("stop")])
        loop, _ = _loop(stream)
        assert asyncio.run(loop.run_turn("hi")) == ""
        assert [t.role for t in loop.conversation.turns] == ["user"]


class TestToolCycle:
    def test_tool_results_fed_back(self):
        log = []
        stream = ScriptedStream(
            tool_response(("t1", "echo", '{"text": "one"}'), text="Let me check."),
            text_response("Done."),
        )
        loop, presenter = _loop(stream, registry=_registry(log))
        answer = asyncio.run(loop.run_turn("go"))

        assert answer == "Done."
        assert log == ["one"]
        roles = [t.role for t in loop.conversation.turns]
        assert roles == ["user", "assistant", "user", "assistant"]
        assert loop.conversation.turns[2].blocks == (
            ToolResultBlock("t1", "echo one", False),
        )
        second = stream.requests[1].messages
        assert second[-1] == {"role": "tool", "tool_call_id": "t1", "content": "echo one"}
        assert ("tool_finished", "echo", True) in presenter.calls

    def test_unknown_tool_continues_loop(self):
        stream = ScriptedStream(
            tool_response(("t1", "frobnicate", "{}")),
            text_response("Sorry."),
        )
        loop, _ = _loop(stream)
        assert asyncio.run(loop.run_turn("go")) == "Sorry."
        result = loop.conversation.turns[2].blocks[0]
        assert result == ToolResultBlock("t1", "tool not found: frobnicate", True)
        assert len(stream.requests) == 2

    def test_failing_tool_continues_loop(self):
        stream = ScriptedStream(
            tool_response(("t1", "explode", "{}")),
            text_response("It failed."),
        )
        loop, presenter = _loop(stream)
        assert asyncio.run(loop.run_turn("go")) == "It failed."
        assert loop.conversation.turns[2].blocks[0].is_error
        assert ("tool_finished", "explode", False) in presenter.calls
        assert stream.requests[1].messages[-1]["content"] == "error: kaboom"

    def test_bad_json_becomes_error_result(self):
        stream = ScriptedStream(
            tool_response(("t1", "echo", '{"text": ')),
            text_response("ok"),
        )
        loop, _ = _loop(stream)
        asyncio.run(loop.run_turn("go"))
        result = loop.conversation.turns[2].blocks[0]
        assert result.is_error
        assert result.content.startswith("invalid JSON in tool input")

    def test_two_calls_dispatched_in_order(self):
        log = []
        stream = ScriptedStream(
            tool_response(("a", "echo", '{"text": "A"}'), ("b", "echo", '{"text": "B"}')),
            text_response("both done"),
        )
        loop, _ = _loop(stream, registry=_registry(log))
        asyncio.run(loop.run_turn("go"))
        assert log == ["A", "B"]
        results = loop.conversation.turns[2].tool_results
        assert [r.tool_use_id for r in results] == ["a", "b"]

    def test_chained_tool_rounds(self):
        stream = ScriptedStream(
            tool_response(("1", "echo", '{"text": "x"}')),
            tool_response(("2", "echo", '{"text": "y"}')),
            tool_response(("3", "echo", '{"text": "z"}')),
            text_response("finally"),
        )
        loop, _ = _loop(stream)
        assert asyncio.run(loop.run_turn("go")) == "finally"
        assert len(stream.requests) == 4
        assert len(loop.conversation) == 8


class TestTransportFailure:
    def test_error_surfaced_and_nothing_partial_appended(self):
        stream = ScriptedStream(
            [
                BlockStart(0, TEXT),
                BlockDelta(0, TEXT, "partial"),
                TransportError("LLM stream failed: reset"),
            ]
        )
        loop, presenter = _loop(stream)
        assert asyncio.run(loop.run_turn("hi")) is None
        assert [t.role for t in loop.conversation.turns] == ["user"]
        assert ("error", "LLM stream failed: reset") in presenter.calls
        assert presenter.calls[-1] == ("turn_finished",)
        assert loop.state is LoopState.AWAITING_INPUT

    def test_failure_after_tool_round_keeps_completed_turns(self):
        stream = ScriptedStream(
            tool_response(("t1", "echo", '{"text": "x"}')),
            TransportError("LLM call failed: down"),
        )
        loop, _ = _loop(stream)
        assert asyncio.run(loop.run_turn("go")) is None
        assert [t.role for t in loop.conversation.turns] == ["user", "assistant", "user"]

    def test_next_turn_works_after_failure(self):
        stream = ScriptedStream(
            TransportError("LLM call failed: down"),
            text_response("back"),
        )
        loop, _ = _loop(stream)
        asyncio.run(loop.run_turn("first"))
        assert asyncio.run(loop.run_turn("second")) == "back"
        messages = stream.requests[1].messages
        assert [m["content"] for m in messages if m["role"] == "user"] == [
            "first",
            "second",
        ]

    def test_duplicate_tool_ids_do_not_end_the_turn(self):
        log = []
        stream = ScriptedStream(
            tool_response(("x", "echo", '{"text": "A"}'), ("x", "echo", '{"text": "B"}')),
            text_response("done"),
        )
        loop, _ = _loop(stream, registry=_registry(log))
        assert asyncio.run(loop.run_turn("hi")) == "done"
        assert log == ["A", "B"]
        ids = [r.tool_use_id for r in loop.conversation.turns[2].tool_results]
        assert ids[0] == "x"
        assert ids[1] != "x"

    def test_rejected_assistant_turn_is_turn_fatal(self, monkeypatch):
        def reject(self, blocks):
            raise ConversationError("assistant turn has no content blocks")

        monkeypatch.setattr(ConversationState, "append_assistant", reject)
        stream = ScriptedStream(text_response("ok"), text_response("again"))
        loop, presenter = _loop(stream)
        assert asyncio.run(loop.run_turn("hi")) is None
        assert [t.role for t in loop.conversation.turns] == ["user"]
        assert ("error", "assistant turn has no content blocks") in presenter.calls
        assert loop.state is LoopState.AWAITING_INPUT
        # the session keeps going
        assert asyncio.run(loop.run_turn("again")) is None
        assert len(stream.requests) == 2


class TestLabelPerAssistantTurn:
    def test_text_tool_text_prints_two_labels(self, monkeypatch):
        buf = StringIO()
        monkeypatch.setattr(fmt, "_out", Console(file=buf, no_color=True, width=80))
        stream = ScriptedStream(
            tool_response(("t1", "echo", '{"text": "x"}'), text="Let me look."),
            text_response("Here it is."),
        )
        loop = AgentLoop(AgentConfig(), _registry(), TerminalPresenter(), stream_fn=stream)
        asyncio.run(loop.run_turn("hi"))
        out = buf.getvalue()
        assert out.count("Assistant") == 2
        assert out.index("Finished echo") < out.rindex("Assistant")
        assert out.rstrip().endswith("Here it is.")


class TestVerbose:
    def test_request_header_and_timing(self, monkeypatch):
        seen = []
        monkeypatch.setattr(fmt, "request_header", lambda n, est: seen.append(("header", n)))
        monkeypatch.setattr(fmt, "llm_timing", lambda t, reason: seen.append(("timing", reason)))
        loop, _ = _loop(ScriptedStream(text_response("ok")), verbose=True)
        asyncio.run(loop.run_turn("hi"))
        assert seen == [("header", 1), ("timing", "stop")]


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _scripted_input(*lines):
    pending = list(lines)

    async def read_input():
        if not pending:
            raise EOFError
        line = pending.pop(0)
        if isinstance(line, BaseException):
            raise line
        return line

    return read_input


class TestRepl:
    def _run(self, stream, *lines):
        loop, presenter = _loop(stream)
        loop.read_input = _scripted_input(*lines)
        asyncio.run(loop.run())
        return loop, presenter

    def test_banner_and_eof(self):
        loop, presenter = self._run(ScriptedStream())
        assert presenter.calls == [("banner",)]

    def test_questions_until_exit(self):
        stream = ScriptedStream(text_response("one"), text_response("two"))
        loop, _ = self._run(stream, "first", "", "   ", "second", "/exit", "never")
        assert len(stream.requests) == 2
        assert len(loop.conversation) == 4

    def test_quit(self):
        stream = ScriptedStream()
        self._run(stream, "/quit", "ignored")
        assert stream.requests == []

    def test_clear_starts_fresh_conversation(self, monkeypatch):
        monkeypatch.setattr(fmt, "info", lambda msg: None)
        stream = ScriptedStream(text_response("one"), text_response("two"))
        loop, _ = _loop(stream)
        loop.read_input = _scripted_input("first", "/clear", "second")
        old = loop.conversation
        asyncio.run(loop.run())

        assert loop.conversation is not old
        assert len(old) == 2
        assert [m["content"] for m in stream.requests[1].messages if m["role"] == "user"] == [
            "second"
        ]

    def test_help(self, monkeypatch):
        shown = []
        monkeypatch.setattr(fmt, "repl_help", lambda: shown.append(True))
        stream = ScriptedStream()
        self._run(stream, "/help")
        assert shown == [True]
        assert stream.requests == []

    def test_ctrl_c_at_prompt_exits(self):
        stream = ScriptedStream()
        self._run(stream, KeyboardInterrupt())
        assert stream.requests == []

    def test_unknown_slash_command_goes_to_model(self):
        stream = ScriptedStream(text_response("hm"))
        self._run(stream, "/frobnicate")
        assert stream.requests[0].messages[-1]["content"] == "/frobnicate"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestMain:
    def test_version(self, monkeypatch, capsys):
        from ponder import agent

        monkeypatch.setattr("sys.argv", ["ponder", "--version"])
        with pytest.raises(SystemExit) as exc:
            agent.main()
        assert exc.value.code == 0
        assert capsys.readouterr().out.strip()

    def test_init_config(self, monkeypatch, capsys):
        from ponder import agent

        monkeypatch.setattr("sys.argv", ["ponder", "--init-config"])
        with pytest.raises(SystemExit) as exc:
            agent.main()
        assert exc.value.code == 0
        assert "ponder configuration file" in capsys.readouterr().out

    def test_bad_budget_exits_1(self, tmp_path, monkeypatch):
        from ponder import agent

        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.setattr(
            "sys.argv",
            ["ponder", "--base-dir", str(tmp_path), "--reasoning-budget", "10", "hi"],
        )
        monkeypatch.setattr(fmt, "error", lambda msg: None)
        with pytest.raises(SystemExit) as exc:
            agent.main()
        assert exc.value.code == 1

    def test_one_shot_exit_codes(self, tmp_path, monkeypatch):
        from ponder import agent

        responses = [text_response("fine"), TransportError("LLM call failed: down")]

        def fake_stream(request, **kwargs):
            return ScriptedStream(responses.pop(0))(request, **kwargs)

        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.setattr(agent, "stream_completion", fake_stream)
        monkeypatch.setattr(fmt, "init", lambda **kwargs: None)
        monkeypatch.setattr(agent, "TerminalPresenter", lambda **kwargs: Presenter())

        codes = []
        for _ in range(2):
            monkeypatch.setattr(
                "sys.argv", ["ponder", "--base-dir", str(tmp_path), "--no-color", "hi"]
            )
            with pytest.raises(SystemExit) as exc:
                agent.main()
            codes.append(exc.value.code)
        assert codes == [0, 1]

    def test_parser_positional_optional(self):
        assert build_parser().parse_args([]).question is None
        assert build_parser().parse_args(["what?"]).question == "what?"

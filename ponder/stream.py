"""Demultiplex one model response stream into text, reasoning and tool calls.

The inference boundary yields an ordered sequence of indexed block events.
``StreamDemultiplexer`` folds them, one at a time and strictly in arrival
order, into presentation notifications and a finalized list of content
blocks. Each block index is tracked independently (Closed -> Open(kind) ->
Closed); an event that does not fit that machine is recorded as a
``ProtocolAnomaly``, logged, and dropped.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .conversation import TextBlock, ThinkingBlock, ToolUseBlock
from .errors import ProtocolAnomaly
from .stages import Stage, classify

logger = logging.getLogger(__name__)


class BlockKind(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"


@dataclass(frozen=True)
class BlockStart:
    index: int
    kind: BlockKind
    tool_use_id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class BlockDelta:
    index: int
    kind: BlockKind
    payload: str


@dataclass(frozen=True)
class BlockStop:
    index: int


@dataclass(frozen=True)
class MessageStop:
    finish_reason: str | None = None


@dataclass
class ReasoningSnapshot:
    stage: Stage | None = None
    accumulated_text: str = ""
    is_active: bool = True
    is_collapsed: bool = False


@dataclass
class StreamBlockState:
    kind: BlockKind
    parts: list[str] = field(default_factory=list)
    tool_use_id: str | None = None
    name: str | None = None
    reasoning: ReasoningSnapshot | None = None
    started_at: float = 0.0

    @property
    def text(self) -> str:
        return "".join(self.parts)


@dataclass
class StreamResult:
    blocks: list
    text: str
    finish_reason: str | None
    anomalies: list[ProtocolAnomaly]

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]


def parse_tool_input(raw: str) -> tuple[dict, str | None]:
    """Parse accumulated partial-JSON input. Returns (input, error)."""
    raw = raw.strip()
    if not raw:
        return {}, None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        return {}, f"invalid JSON in tool input: {e}"
    if not isinstance(value, dict):
        return {}, f"tool input must be a JSON object, got {type(value).__name__}"
    return value, None


class StreamDemultiplexer:
    """Consumes the events of a single request. Create one per request."""

    def __init__(self, sink, *, collapsed: bool = False):
        self.sink = sink
        self.collapsed = collapsed
        self.anomalies: list[ProtocolAnomaly] = []
        self.finish_reason: str | None = None
        self._open: dict[int, StreamBlockState] = {}
        self._seen: set[int] = set()
        self._tool_use_ids: set[str] = set()
        self._order: list[int] = []
        self._finalized: dict[int, object] = {}

    @property
    def reasoning(self) -> ReasoningSnapshot | None:
        """Snapshot of the most recently opened reasoning block still open."""
        for index in reversed(self._order):
            state = self._open.get(index)
            if state is not None and state.kind is BlockKind.THINKING:
                return state.reasoning
        return None

    def feed(self, event) -> None:
        if isinstance(event, BlockStart):
            self._on_start(event)
        elif isinstance(event, BlockDelta):
            self._on_delta(event)
        elif isinstance(event, BlockStop):
            self._on_stop(event)
        elif isinstance(event, MessageStop):
            self.finish_reason = event.finish_reason
        else:
            self._anomaly(f"unknown stream event {type(event).__name__}", event)

    def finish(self) -> StreamResult:
        """Close anything left open and return the finalized blocks in order."""
        for index in list(self._open):
            self._anomaly(f"block {index} still open at end of stream", None)
            self._close(index)
        blocks = [self._finalized[i] for i in self._order if i in self._finalized]
        text = "".join(b.value for b in blocks if isinstance(b, TextBlock))
        return StreamResult(
            blocks=blocks,
            text=text,
            finish_reason=self.finish_reason,
            anomalies=list(self.anomalies),
        )

    # -- transitions ----------------------------------------------------------

    def _on_start(self, event: BlockStart) -> None:
        if event.index in self._seen:
            self._anomaly(f"block index {event.index} reused", event)
            return
        state = StreamBlockState(kind=event.kind, started_at=time.monotonic())
        if event.kind is BlockKind.TOOL_USE:
            if not event.name:
                self._anomaly(f"tool_use block {event.index} has no name", event)
                return
            state.name = event.name
            state.tool_use_id = event.tool_use_id
            if state.tool_use_id in self._tool_use_ids:
                self._anomaly(
                    f"tool_use id {state.tool_use_id} reused by block {event.index}",
                    event,
                )
                state.tool_use_id = None
            if not state.tool_use_id:
                state.tool_use_id = f"toolu_{uuid.uuid4().hex[:24]}"
            self._tool_use_ids.add(state.tool_use_id)
            self.sink.tool_call_started(state.name, state.tool_use_id)
        elif event.kind is BlockKind.THINKING:
            state.reasoning = ReasoningSnapshot(is_collapsed=self.collapsed)
        self._seen.add(event.index)
        self._order.append(event.index)
        self._open[event.index] = state
        logger.debug("block %d opened (%s)", event.index, event.kind.value)

    def _on_delta(self, event: BlockDelta) -> None:
        state = self._open.get(event.index)
        if state is None:
            self._anomaly(f"delta for block {event.index} which is not open", event)
            return
        if state.kind is not event.kind:
            self._anomaly(
                f"{event.kind.value} delta for {state.kind.value} block {event.index}",
                event,
            )
            return
        if not event.payload:
            return
        state.parts.append(event.payload)
        if state.kind is BlockKind.TEXT:
            self.sink.text_appended(event.payload)
        elif state.kind is BlockKind.THINKING:
            self._on_reasoning(state, event.payload)

    def _on_reasoning(self, state: StreamBlockState, payload: str) -> None:
        snap = state.reasoning
        snap.accumulated_text = state.text
        stage = classify(snap.accumulated_text)
        if snap.stage is None:
            snap.stage = stage
            self.sink.reasoning_started(stage)
        elif stage != snap.stage:
            old, snap.stage = snap.stage, stage
            self.sink.reasoning_stage_changed(old, stage)
        self.sink.reasoning_appended(payload, stage)

    def _on_stop(self, event: BlockStop) -> None:
        if event.index not in self._open:
            self._anomaly(f"stop for block {event.index} which is not open", event)
            return
        self._close(event.index)

    def _close(self, index: int) -> None:
        state = self._open.pop(index)
        if state.kind is BlockKind.TEXT:
            self._finalized[index] = TextBlock(state.text)
        elif state.kind is BlockKind.THINKING:
            state.reasoning.is_active = False
            self._finalized[index] = ThinkingBlock(state.text)
            elapsed_ms = (time.monotonic() - state.started_at) * 1000
            self.sink.reasoning_ended(elapsed_ms)
        else:
            tool_input, error = parse_tool_input(state.text)
            if error:
                logger.warning("tool_use %s (%s): %s", state.tool_use_id, state.name, error)
            self._finalized[index] = ToolUseBlock(
                id=state.tool_use_id,
                name=state.name,
                input=tool_input,
                input_error=error,
            )
        logger.debug("block %d closed (%s)", index, state.kind.value)

    def _anomaly(self, message: str, event) -> None:
        anomaly = ProtocolAnomaly(message, event)
        self.anomalies.append(anomaly)
        logger.warning("stream protocol anomaly: %s", message)

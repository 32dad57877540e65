"""Presentation notifications emitted by the agent loop, and their terminal rendering."""

import logging
from dataclasses import dataclass, field

from . import fmt
from .stages import Stage

logger = logging.getLogger(__name__)


class Presenter:
    """Receives every notification the core produces. All methods are no-ops.

    Subclass and override what you need to render.
    """

    def banner_shown(self, message: str) -> None:
        pass

    def assistant_turn_started(self) -> None:
        """A new request is about to stream; fires once per assistant turn."""

    def text_appended(self, delta: str) -> None:
        pass

    def reasoning_started(self, stage: Stage) -> None:
        pass

    def reasoning_appended(self, delta: str, stage: Stage) -> None:
        pass

    def reasoning_stage_changed(self, old: Stage, new: Stage) -> None:
        pass

    def reasoning_ended(self, duration_ms: float) -> None:
        pass

    def tool_call_started(self, name: str, tool_use_id: str) -> None:
        """A tool_use block began streaming; its input is not complete yet."""

    def tool_started(self, name: str) -> None:
        pass

    def tool_finished(self, name: str, success: bool) -> None:
        pass

    def turn_finished(self) -> None:
        pass

    def error_raised(self, message: str) -> None:
        pass


@dataclass
class TurnPresentationState:
    label_printed: bool = False
    reasoning_block_open: bool = False
    # Stages visited by the open reasoning block, for the collapsed summary.
    stages: list[Stage] = field(default_factory=list)

    def reset(self) -> None:
        self.label_printed = False
        self.reasoning_block_open = False
        self.stages.clear()


class TerminalPresenter(Presenter):
    """Renders notifications with fmt.

    In collapsed mode reasoning text is not shown live; a one-line stage
    summary with elapsed time is printed when the block closes.
    """

    def __init__(self, *, collapsed: bool = False):
        self.collapsed = collapsed
        self.state = TurnPresentationState()

    def banner_shown(self, message: str) -> None:
        fmt.banner(message)

    def assistant_turn_started(self) -> None:
        self.state.reset()

    def text_appended(self, delta: str) -> None:
        if not self.state.label_printed:
            fmt.assistant_label()
            self.state.label_printed = True
        fmt.assistant_stream(delta)

    def reasoning_started(self, stage: Stage) -> None:
        self.state.reasoning_block_open = True
        self.state.stages = [stage]
        if not self.collapsed:
            fmt.reasoning_header(stage)

    def reasoning_appended(self, delta: str, stage: Stage) -> None:
        if not self.collapsed:
            fmt.reasoning_stream(delta, stage)

    def reasoning_stage_changed(self, old: Stage, new: Stage) -> None:
        self.state.stages.append(new)
        if not self.collapsed:
            fmt.reasoning_end()
            fmt.reasoning_header(new)

    def reasoning_ended(self, duration_ms: float) -> None:
        if not self.state.reasoning_block_open:
            return
        if self.collapsed:
            fmt.reasoning_summary(self.state.stages, duration_ms / 1000)
        else:
            fmt.reasoning_end()
        self._close_reasoning()

    def tool_call_started(self, name: str, tool_use_id: str) -> None:
        logger.debug("model is preparing a call to %s (%s)", name, tool_use_id)

    def tool_started(self, name: str) -> None:
        fmt.tool_start(name)

    def tool_finished(self, name: str, success: bool) -> None:
        fmt.tool_end(name, success)

    def turn_finished(self) -> None:
        if self.state.label_printed:
            fmt.end_turn()
        self.state.reset()

    def error_raised(self, message: str) -> None:
        fmt.error(message)

    def _close_reasoning(self) -> None:
        self.state.reasoning_block_open = False
        self.state.stages = []

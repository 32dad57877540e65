"""Append-only conversation history made of role turns and content blocks."""

import json
from dataclasses import dataclass, field
from typing import Union

import tiktoken

from .errors import ConversationError

_encoder = tiktoken.get_encoding("cl100k_base")


@dataclass(frozen=True)
class TextBlock:
    value: str


@dataclass(frozen=True)
class ThinkingBlock:
    """Reasoning text. Shown to the user, never sent back to the model."""

    value: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict
    # Set when the streamed JSON input could not be parsed.
    input_error: str | None = None


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock]


@dataclass(frozen=True)
class Turn:
    role: str
    blocks: tuple[ContentBlock, ...]

    @property
    def text(self) -> str:
        return "".join(b.value for b in self.blocks if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]


@dataclass
class ConversationState:
    """Ordered turns for one session.

    Turns are only ever appended. A user turn carrying tool_result blocks must
    directly follow the assistant turn that issued the matching tool_use
    blocks, with exactly one result per call, in call order.
    """

    system_prompt: str | None = None
    turns: list[Turn] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.turns)

    @property
    def last(self) -> Turn | None:
        return self.turns[-1] if self.turns else None

    def append_user_text(self, text: str) -> Turn:
        turn = Turn("user", (TextBlock(text),))
        self.turns.append(turn)
        return turn

    def append_assistant(self, blocks) -> Turn:
        kept = []
        for block in blocks:
            if isinstance(block, ThinkingBlock):
                continue
            if isinstance(block, ToolResultBlock):
                raise ConversationError("assistant turns cannot carry tool_result blocks")
            kept.append(block)
        if not kept:
            raise ConversationError("assistant turn has no content blocks")
        ids = [b.id for b in kept if isinstance(b, ToolUseBlock)]
        if len(ids) != len(set(ids)):
            raise ConversationError(f"duplicate tool_use ids in assistant turn: {ids}")
        turn = Turn("assistant", tuple(kept))
        self.turns.append(turn)
        return turn

    def append_tool_results(self, results: list[ToolResultBlock]) -> Turn:
        previous = self.last
        if previous is None or previous.role != "assistant":
            raise ConversationError(
                "tool results must follow the assistant turn that requested them"
            )
        expected = [b.id for b in previous.tool_uses]
        got = [r.tool_use_id for r in results]
        if got != expected:
            raise ConversationError(
                f"tool results {got} do not match pending tool calls {expected}"
            )
        turn = Turn("user", tuple(results))
        self.turns.append(turn)
        return turn

    def to_messages(self) -> list[dict]:
        """Serialize to the OpenAI chat format litellm accepts."""
        messages: list[dict] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        for turn in self.turns:
            if turn.role == "assistant":
                msg: dict = {"role": "assistant", "content": turn.text or None}
                uses = turn.tool_uses
                if uses:
                    msg["tool_calls"] = [
                        {
                            "id": b.id,
                            "type": "function",
                            "function": {
                                "name": b.name,
                                "arguments": json.dumps(b.input),
                            },
                        }
                        for b in uses
                    ]
                messages.append(msg)
                continue
            for block in turn.blocks:
                if isinstance(block, ToolResultBlock):
                    content = block.content
                    if block.is_error and not content.startswith("error:"):
                        content = f"error: {content}"
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": block.tool_use_id,
                            "content": content,
                        }
                    )
            text = turn.text
            if text:
                messages.append({"role": "user", "content": text})
        return messages


def estimate_tokens(messages: list[dict], tools: list | None = None) -> int:
    """Count tokens across serialized messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators): ~4 tokens each
    total += 4 * len(messages)
    return total

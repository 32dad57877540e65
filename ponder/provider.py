"""Inference boundary: litellm streaming chunks to indexed block events."""

import logging
from dataclasses import dataclass, field

from .errors import TransportError
from .stream import BlockDelta, BlockKind, BlockStart, BlockStop, MessageStop

logger = logging.getLogger(__name__)


@dataclass
class InferenceRequest:
    model: str
    max_output_tokens: int
    messages: list[dict]
    tools: list[dict] = field(default_factory=list)
    reasoning_budget: int | None = None
    temperature: float | None = None


def build_completion_kwargs(
    request: InferenceRequest,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
) -> dict:
    kwargs = dict(
        model=request.model,
        messages=request.messages,
        max_tokens=request.max_output_tokens,
        stream=True,
    )
    if request.tools:
        kwargs["tools"] = request.tools
        kwargs["tool_choice"] = "auto"
    if request.reasoning_budget:
        kwargs["thinking"] = {"type": "enabled", "budget_tokens": request.reasoning_budget}
    elif request.temperature is not None:
        # Extended thinking only runs at the provider's default temperature.
        kwargs["temperature"] = request.temperature
    if api_key:
        kwargs["api_key"] = api_key
    if base_url:
        kwargs["api_base"] = base_url
    return kwargs


async def stream_completion(
    request: InferenceRequest,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
):
    """Issue one streaming request and yield block events in arrival order.

    Any failure opening or reading the stream surfaces as TransportError.
    """
    import litellm

    litellm.suppress_debug_info = True
    # Lets providers that replay signed thinking blocks accept our history,
    # which never carries reasoning.
    litellm.modify_params = True

    kwargs = build_completion_kwargs(request, api_key=api_key, base_url=base_url)
    logger.debug(
        "requesting %s (max_tokens=%s, %d messages, %d tools, thinking=%s)",
        request.model,
        request.max_output_tokens,
        len(request.messages),
        len(request.tools),
        request.reasoning_budget,
    )
    try:
        response = await litellm.acompletion(**kwargs)
    except Exception as e:
        raise TransportError(f"LLM call failed: {e}") from e

    try:
        async for event in chunks_to_events(response):
            yield event
    except Exception as e:
        raise TransportError(f"LLM stream failed: {e}") from e


async def chunks_to_events(chunks):
    """Translate OpenAI-style delta chunks into BlockStart/Delta/Stop events.

    Reasoning and text arrive as one running block each; switching between
    them closes the open one. Every tool-call index becomes its own
    tool_use block, held open until the stream ends because providers may
    interleave argument fragments of several calls.
    """
    next_index = 0
    current: tuple[int, BlockKind] | None = None
    tool_blocks: dict[int, int] = {}
    pending: dict[int, dict] = {}
    finish_reason = None

    async for chunk in chunks:
        choices = getattr(chunk, "choices", None)
        if not choices:
            continue
        choice = choices[0]
        delta = getattr(choice, "delta", None)

        if delta is not None:
            for kind, payload in (
                (BlockKind.THINKING, getattr(delta, "reasoning_content", None)),
                (BlockKind.TEXT, getattr(delta, "content", None)),
            ):
                if not payload:
                    continue
                if current is None or current[1] is not kind:
                    if current is not None:
                        yield BlockStop(current[0])
                    current = (next_index, kind)
                    next_index += 1
                    yield BlockStart(current[0], kind)
                yield BlockDelta(current[0], kind, payload)

            for position, tc in enumerate(getattr(delta, "tool_calls", None) or []):
                if current is not None:
                    yield BlockStop(current[0])
                    current = None
                tc_index = getattr(tc, "index", None)
                if tc_index is None:
                    tc_index = position
                fn = getattr(tc, "function", None)
                name = getattr(fn, "name", None) if fn is not None else None
                arguments = getattr(fn, "arguments", None) if fn is not None else None

                if tc_index in tool_blocks:
                    if arguments:
                        yield BlockDelta(tool_blocks[tc_index], BlockKind.TOOL_USE, arguments)
                    continue

                # Hold fragments until the call's name is known.
                slot = pending.setdefault(tc_index, {"id": None, "name": None, "args": []})
                slot["id"] = slot["id"] or getattr(tc, "id", None)
                slot["name"] = slot["name"] or name
                if arguments:
                    slot["args"].append(arguments)
                if slot["name"]:
                    del pending[tc_index]
                    tool_blocks[tc_index] = next_index
                    next_index += 1
                    yield BlockStart(
                        tool_blocks[tc_index],
                        BlockKind.TOOL_USE,
                        tool_use_id=slot["id"],
                        name=slot["name"],
                    )
                    for fragment in slot["args"]:
                        yield BlockDelta(tool_blocks[tc_index], BlockKind.TOOL_USE, fragment)

        if getattr(choice, "finish_reason", None):
            finish_reason = choice.finish_reason

    if current is not None:
        yield BlockStop(current[0])
    for tc_index, slot in pending.items():
        logger.warning("dropping unnamed tool call at index %s (id=%s)", tc_index, slot["id"])
    for block_index in tool_blocks.values():
        yield BlockStop(block_index)
    yield MessageStop(finish_reason)

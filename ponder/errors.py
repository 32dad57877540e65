"""Exception taxonomy for the agent loop, its transport and its tools."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad types, impossible token budgets, etc.)."""


class TransportError(AgentError):
    """The inference service was unreachable or returned a malformed stream.

    Aborts the current user turn only.
    """


class ProtocolAnomaly(AgentError):
    """An out-of-order or inconsistent stream event.

    Never raised: the demultiplexer records and logs it, then drops the event.
    """

    def __init__(self, message: str, event=None):
        super().__init__(message)
        self.event = event


class ToolExecutionError(AgentError):
    """A tool's execute() failed. Captured into an is_error tool_result."""


class ToolNotFoundError(ToolExecutionError):
    """The model asked for a tool name that is not registered."""


class InputParseError(ToolExecutionError):
    """A tool_use block's streamed JSON input could not be parsed."""


class ConversationError(ValueError):
    """A caller tried to append a turn that breaks conversation invariants."""

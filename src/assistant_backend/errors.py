"""Error taxonomy shared by the tools, the orchestrator and the timeline."""


class AssistantError(Exception):
    """Base class for all errors raised by the assistant backend."""


class ToolError(AssistantError):
    """A recoverable tool failure. Folded into model context, never fatal."""

    kind = "tool"


class NotFound(ToolError):
    """The location or title could not be resolved upstream."""

    kind = "not_found"

    def __init__(self, subject: str, message: str | None = None):
        self.subject = subject
        super().__init__(message or f"'{subject}' not found")


class UpstreamError(ToolError):
    """Network, status or decoding failure from a third-party API."""

    kind = "upstream"


class ToolTimeout(UpstreamError):
    kind = "timeout"


class InvalidInput(ToolError):
    kind = "invalid_input"


class UnknownTool(ToolError):
    kind = "unknown_tool"

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool '{tool_name}'")


class ConfigurationError(AssistantError):
    """Missing credential or setting. Aborts the turn."""


class ProtocolError(AssistantError):
    """Malformed or out-of-order stream frame, or an unmatched tool call id."""

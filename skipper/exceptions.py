"""Custom exceptions for Skipper."""


class SkipperError(Exception):
    """Base exception for Skipper."""

    pass


class ConfigurationError(SkipperError):
    """Configuration-related errors."""

    pass


class LLMError(SkipperError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(SkipperError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.reason = message


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool arguments do not satisfy the tool's parameter schema."""

    def __init__(self, tool_name: str, problems: list[str]):
        super().__init__(f"Invalid parameters: {'; '.join(problems)}")
        self.tool_name = tool_name
        self.problems = list(problems)


class SessionError(SkipperError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class TurnInProgressError(SessionError):
    """A turn is already running for the session."""

    def __init__(self, session_id: str):
        super().__init__(f"Turn already in progress for session: {session_id}")
        self.session_id = session_id


class TurnLimitError(SessionError):
    """A turn hit one of the loop guards."""

    pass


class CompactionError(SkipperError):
    """Context compaction errors."""

    pass


class NothingToCompactError(CompactionError, ValueError):
    """Compaction requested on a history with no prunable middle."""

    def __init__(self, message_count: int, inception_count: int, working_window_count: int):
        super().__init__(
            "No messages to compact: "
            f"{message_count} messages, inception={inception_count}, working={working_window_count}"
        )
        self.message_count = message_count

"""Tool permission gate.

Combines static policy, per-session choices and an interactive confirmation
callback into one decision per tool call. Patterns are deliberately minimal:
exact names, ``prefix*``, ``*suffix`` and ``*``.
"""

import inspect
from enum import Enum
from typing import Awaitable, Callable

from skipper.config import PermissionConfig
from skipper.llm import ToolCall
from skipper.logging import get_logger

log = get_logger(__name__)


class PermissionDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class PermissionResponse(str, Enum):
    ALLOW_ONCE = "allow_once"
    ALLOW_ALWAYS = "allow_always"
    DENY = "deny"


PermissionCallback = Callable[
    [ToolCall],
    PermissionResponse | str | Awaitable[PermissionResponse | str],
]

SAFE_READ_TOOLS = ["read", "glob", "grep", "todoread", "phaseread", "skill"]
WRITE_TOOLS = ["write", "edit", "bash"]


def matches_pattern(name: str, pattern: str) -> bool:
    """Match a tool name against an exact, ``prefix*``, ``*suffix`` or ``*`` pattern."""
    if pattern == "*":
        return True
    if len(pattern) > 1 and pattern.endswith("*") and not pattern.startswith("*"):
        return name.startswith(pattern[:-1])
    if len(pattern) > 1 and pattern.startswith("*") and not pattern.endswith("*"):
        return name.endswith(pattern[1:])
    return name == pattern


def _matches_any(name: str, patterns: list[str]) -> bool:
    return any(matches_pattern(name, pattern) for pattern in patterns)


class PermissionGate:
    """Per-session permission state and decisions."""

    def __init__(
        self,
        config: PermissionConfig | None = None,
        request_callback: PermissionCallback | None = None,
    ):
        self._config = config or PermissionConfig()
        self._request_callback = request_callback
        self._session_allowed: set[str] = set()
        self._session_denied: set[str] = set()

    @property
    def config(self) -> PermissionConfig:
        return self._config

    def update_config(self, config: PermissionConfig) -> None:
        """Replace the static policy; session choices are kept."""
        self._config = config

    def set_request_callback(self, callback: PermissionCallback | None) -> None:
        self._request_callback = callback

    def get_permission_decision(self, tool_name: str) -> PermissionDecision:
        """Classify a tool name. First match wins."""
        if self._config.allow_all:
            return PermissionDecision.ALLOW
        if tool_name in self._session_denied:
            return PermissionDecision.DENY
        if tool_name in self._session_allowed:
            return PermissionDecision.ALLOW
        if _matches_any(tool_name, self._config.always_deny):
            return PermissionDecision.DENY
        if _matches_any(tool_name, self._config.always_allow):
            return PermissionDecision.ALLOW
        return PermissionDecision(self._config.default_mode)

    async def check_permission(self, tool_call: ToolCall) -> bool:
        """Decide whether this call may run, asking the user when needed.

        Args:
            tool_call: The call awaiting permission

        Returns:
            True if the call may run

        Raises:
            Whatever the confirmation callback raises.
        """
        decision = self.get_permission_decision(tool_call.name)
        if decision is PermissionDecision.ALLOW:
            return True
        if decision is PermissionDecision.DENY:
            return False

        if self._request_callback is None:
            log.warning(
                "Permission requires confirmation but no callback is registered; denying",
                tool=tool_call.name,
            )
            return False

        outcome = self._request_callback(tool_call)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        response = PermissionResponse(outcome)

        if response is PermissionResponse.ALLOW_ALWAYS:
            self.allow_for_session(tool_call.name)
            return True
        if response is PermissionResponse.ALLOW_ONCE:
            return True
        # A one-off denial is not remembered; the user is asked again next time.
        return False

    def allow_for_session(self, tool_name: str) -> None:
        self._session_denied.discard(tool_name)
        self._session_allowed.add(tool_name)

    def deny_for_session(self, tool_name: str) -> None:
        self._session_allowed.discard(tool_name)
        self._session_denied.add(tool_name)

    def is_allowed_for_session(self, tool_name: str) -> bool:
        return tool_name in self._session_allowed

    def is_denied_for_session(self, tool_name: str) -> bool:
        return tool_name in self._session_denied

    def clear_session_permissions(self) -> None:
        self._session_allowed.clear()
        self._session_denied.clear()

    @property
    def session_allowed(self) -> frozenset[str]:
        return frozenset(self._session_allowed)

    @property
    def session_denied(self) -> frozenset[str]:
        return frozenset(self._session_denied)


def read_only_config() -> PermissionConfig:
    """Allow the read-only tools, ask for everything else."""
    return PermissionConfig(default_mode="ask", always_allow=list(SAFE_READ_TOOLS))


def strict_config() -> PermissionConfig:
    """Ask before every tool call."""
    return PermissionConfig(default_mode="ask")


def permissive_config() -> PermissionConfig:
    """Run every tool without asking."""
    return PermissionConfig(allow_all=True)

"""Tool permission policy and evaluation."""

from __future__ import annotations

import fnmatch
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from deckhand.config import Config
from deckhand.exceptions import ConfigurationError
from deckhand.logging import get_logger

if TYPE_CHECKING:
    from deckhand.tools.registry import Tool, ToolContext

log = get_logger(__name__)

DEFAULT_AGENT_NAME = "default"


class PermissionEvalResult(str, Enum):
    ALLOW = "allow"
    ASK = "ask"
    DENY = "deny"


def normalize_tool_name(value: str) -> str:
    """Normalize tool names for policy comparisons."""
    return str(value or "").strip().lower()


def _matches_any(name: str, patterns: set[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


class AgentPolicy(BaseModel):
    """Allow/deny sets and per-tool settings for one agent."""

    name: str = DEFAULT_AGENT_NAME
    allowed_tools: set[str] = Field(default_factory=set)
    denied_tools: set[str] = Field(default_factory=set)
    tools_settings: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def is_allowed(self, tool_name: str) -> bool:
        return _matches_any(normalize_tool_name(tool_name), self.allowed_tools)

    def is_denied(self, tool_name: str) -> bool:
        return _matches_any(normalize_tool_name(tool_name), self.denied_tools)

    def settings_for(self, tool_name: str) -> dict[str, Any] | None:
        return self.tools_settings.get(normalize_tool_name(tool_name))


class Agents:
    """The set of known agent policies plus session-level trust overrides."""

    def __init__(
        self,
        agents: dict[str, AgentPolicy] | None = None,
        active: str = DEFAULT_AGENT_NAME,
        trust_all_tools: bool = False,
    ):
        self._agents: dict[str, AgentPolicy] = dict(agents or {})
        self._agents.setdefault(DEFAULT_AGENT_NAME, AgentPolicy())
        if active not in self._agents:
            raise ConfigurationError(f"Unknown agent: {active}")
        self._defaults = {name: policy.model_copy(deep=True) for name, policy in self._agents.items()}
        self.active = active
        self.trust_all_tools = trust_all_tools

    @classmethod
    def from_config(
        cls,
        config: Config,
        active: str | None = None,
        trust_all_tools: bool = False,
    ) -> Agents:
        """Build the default agent from the tools section and add named agents."""
        agents = {
            DEFAULT_AGENT_NAME: AgentPolicy(
                name=DEFAULT_AGENT_NAME,
                allowed_tools={normalize_tool_name(t) for t in config.tools.trusted if normalize_tool_name(t)},
                denied_tools={normalize_tool_name(t) for t in config.tools.denied if normalize_tool_name(t)},
                tools_settings={normalize_tool_name(k): dict(v) for k, v in config.tools.settings.items()},
            )
        }
        for name, agent in config.agents.items():
            agents[name] = AgentPolicy(
                name=name,
                allowed_tools={normalize_tool_name(t) for t in agent.allowed_tools if normalize_tool_name(t)},
                denied_tools={normalize_tool_name(t) for t in agent.denied_tools if normalize_tool_name(t)},
                tools_settings={normalize_tool_name(k): dict(v) for k, v in agent.tools_settings.items()},
            )
        return cls(agents, active=active or DEFAULT_AGENT_NAME, trust_all_tools=trust_all_tools)

    def get_active(self) -> AgentPolicy:
        return self._agents[self.active]

    def names(self) -> list[str]:
        return sorted(self._agents)

    def trust_tools(self, names: list[str]) -> None:
        """Add tools to the active agent's allowed set for this session."""
        policy = self.get_active()
        for name in names:
            normalized = normalize_tool_name(name)
            if normalized:
                policy.allowed_tools.add(normalized)
        log.info("Trusted tools", agent=self.active, tools=names)

    def untrust_tools(self, names: list[str]) -> None:
        policy = self.get_active()
        for name in names:
            policy.allowed_tools.discard(normalize_tool_name(name))
        self.trust_all_tools = False
        log.info("Untrusted tools", agent=self.active, tools=names)

    def trust_all(self) -> None:
        self.trust_all_tools = True

    def reset_tools(self) -> None:
        """Restore the active agent to its configured policy and drop trust-all."""
        self._agents[self.active] = self._defaults[self.active].model_copy(deep=True)
        self.trust_all_tools = False


def evaluate_permission(tool: Tool, agents: Agents, ctx: ToolContext | None = None) -> PermissionEvalResult:
    """Decide whether a tool use may run, must be confirmed, or is forbidden.

    Order: the deny set wins outright. Per-tool settings only narrow the allow
    set: for an allow-listed tool a settings ``DENY`` or ``ALLOW`` is final, and
    a call the settings do not cover asks (unless trust-all is on). An
    allow-listed tool without settings is allowed. Trust-all allows everything
    else, and otherwise the tool's own risk classification decides.
    """
    policy = agents.get_active()
    name = tool.qualified_name

    if policy.is_denied(name):
        return PermissionEvalResult.DENY

    if policy.is_allowed(name):
        settings = policy.settings_for(name)
        if settings is None:
            return PermissionEvalResult.ALLOW
        verdict = tool.eval_settings(settings)
        if verdict is PermissionEvalResult.ASK and agents.trust_all_tools:
            return PermissionEvalResult.ALLOW
        return verdict

    if agents.trust_all_tools:
        return PermissionEvalResult.ALLOW

    return PermissionEvalResult.ASK if tool.requires_acceptance(policy, ctx) else PermissionEvalResult.ALLOW

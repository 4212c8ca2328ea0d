"""Agent strategies for the worker main container.

Each supported ``spec.agent`` value maps to one strategy that knows how to
install, launch and recognise its agent.  The init phase and the telemetry
sidecar never look at the agent type; the sidecar only receives
``process_pattern`` through its environment.

The prompt reaches the agent through the ``GT_PROMPT`` environment
variable, so launch commands reference ``"$GT_PROMPT"`` instead of
embedding task text in the script.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass

from gastown.operator import errors
from gastown.operator.models.enums import AgentType, LLMProvider
from gastown.operator.models.worker import AgentConfig

# Provider -> (API key variable, endpoint variable) for OpenAI-style agents.
_PROVIDER_ENV: dict[LLMProvider, tuple[str, str]] = {
    LLMProvider.ANTHROPIC: ("ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL"),
    LLMProvider.OPENAI: ("OPENAI_API_KEY", "OPENAI_BASE_URL"),
    # LiteLLM proxies speak the OpenAI API
    LLMProvider.LITELLM: ("OPENAI_API_KEY", "OPENAI_BASE_URL"),
    LLMProvider.OLLAMA: ("OLLAMA_API_KEY", "OLLAMA_HOST"),
}


@dataclass(frozen=True)
class AgentStrategy:
    agent: AgentType
    binary: str
    """Name looked up on PATH, or an absolute path checked with ``-x``."""

    install: str | None
    """Shell command that installs ``binary``.  ``None`` means it must already be on the image."""

    launch: str
    process_pattern: str
    """``grep`` pattern matching the running agent in ``ps`` output."""

    model_flag: str = "--model"

    def launch_command(self, config: AgentConfig | None) -> str:
        command = self.launch
        if config is not None and config.model:
            command += f" {self.model_flag} {shlex.quote(self.model_name(config))}"
        if config is not None and config.args:
            command += " " + shlex.join(config.args)
        return command

    def model_name(self, config: AgentConfig) -> str:
        return config.model or ""

    def api_key_env(self, config: AgentConfig | None) -> str:
        provider = config.provider if config is not None else LLMProvider.LITELLM
        return _PROVIDER_ENV[provider][0]

    def endpoint_env(self, config: AgentConfig | None) -> str:
        provider = config.provider if config is not None else LLMProvider.LITELLM
        return _PROVIDER_ENV[provider][1]


@dataclass(frozen=True)
class ClaudeCodeStrategy(AgentStrategy):
    """Claude Code always talks to an Anthropic-compatible endpoint."""

    def api_key_env(self, config: AgentConfig | None) -> str:
        return "ANTHROPIC_API_KEY"

    def endpoint_env(self, config: AgentConfig | None) -> str:
        return "ANTHROPIC_BASE_URL"


@dataclass(frozen=True)
class OpenCodeStrategy(AgentStrategy):
    def model_name(self, config: AgentConfig) -> str:
        # opencode expects provider/model
        model = config.model or ""
        if "/" in model:
            return model
        return f"{config.provider.value}/{model}"


@dataclass(frozen=True)
class CustomStrategy(AgentStrategy):
    """Runs ``agentConfig.command`` verbatim."""

    def launch_command(self, config: AgentConfig | None) -> str:
        if config is None or not config.command:
            raise errors.validation("agentConfig.command is required for custom agents")
        return shlex.join([*config.command, *config.args])


CLAUDE_CODE = ClaudeCodeStrategy(
    agent=AgentType.CLAUDE_CODE,
    binary="claude",
    install="npm install -g @anthropic-ai/claude-code",
    launch='claude --dangerously-skip-permissions -p "$GT_PROMPT"',
    process_pattern="[n]ode.*claude",
)

OPENCODE = OpenCodeStrategy(
    agent=AgentType.OPENCODE,
    binary="opencode",
    install="npm install -g opencode-ai",
    launch='opencode run "$GT_PROMPT"',
    process_pattern="[o]pencode",
)

AIDER = AgentStrategy(
    agent=AgentType.AIDER,
    binary="aider",
    install="pip install --user --no-cache-dir aider-chat",
    launch='aider --yes-always --message "$GT_PROMPT"',
    process_pattern="[a]ider",
)

CUSTOM = CustomStrategy(
    agent=AgentType.CUSTOM,
    binary="",
    install=None,
    launch="",
    process_pattern="",
)

_STRATEGIES: dict[AgentType, AgentStrategy] = {s.agent: s for s in (CLAUDE_CODE, OPENCODE, AIDER, CUSTOM)}


def get_strategy(agent: AgentType, config: AgentConfig | None = None) -> AgentStrategy:
    """Return the strategy for ``agent``.

    The custom strategy is specialised with the binary named by
    ``agentConfig.command`` so install checks and the sidecar pattern
    refer to the real process.
    """
    strategy = _STRATEGIES[agent]
    if agent == AgentType.CUSTOM and config is not None and config.command:
        name = config.command[0].rsplit("/", 1)[-1]
        return CustomStrategy(
            agent=AgentType.CUSTOM,
            binary=config.command[0],
            install=None,
            launch="",
            process_pattern=f"[{name[0]}]{name[1:]}" if name else "",
        )
    return strategy

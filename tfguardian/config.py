"""Run configuration taken from the GitHub Actions context."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


class ConfigError(Exception):
    """Raised when required GitHub context values are missing."""

    def __init__(self, messages: Iterable[str]) -> None:
        self.messages = list(messages)
        super().__init__("\n".join(self.messages))


@dataclass(frozen=True)
class GitHubContext:
    """The parts of the GitHub Actions context that commands read."""

    server_url: str = ""
    run_id: int = 0
    run_attempt: int = 0
    actor: str = ""


def _map_run_values(config: PlanConfig | PlanStatusCommentsConfig, context: GitHubContext) -> None:
    errors = []
    config.server_url = context.server_url
    if not config.server_url:
        errors.append("GITHUB_SERVER_URL is required")

    config.run_id = context.run_id
    if config.run_id <= 0:
        errors.append("GITHUB_RUN_ID is required")

    config.run_attempt = context.run_attempt
    if config.run_attempt <= 0:
        errors.append("GITHUB_RUN_ATTEMPT is required")

    if errors:
        raise ConfigError(errors)


@dataclass
class PlanConfig:
    """Configuration for the plan command; the server URL is used to link logs."""

    server_url: str = ""
    run_id: int = 0
    run_attempt: int = 0

    def map_github_context(self, context: GitHubContext) -> None:
        """Copy run values from ``context``; raise ConfigError listing any that are missing."""
        _map_run_values(self, context)


@dataclass
class PlanStatusCommentsConfig:
    """Configuration for the plan status comments command."""

    server_url: str = ""
    run_id: int = 0
    run_attempt: int = 0

    def map_github_context(self, context: GitHubContext) -> None:
        """Copy run values from ``context``; raise ConfigError listing any that are missing."""
        _map_run_values(self, context)


@dataclass
class ValidatePermissionsConfig:
    """Configuration for the validate permissions command."""

    actor: str = ""

    def map_github_context(self, context: GitHubContext) -> None:
        """Copy the actor from ``context``; raise ConfigError if it is missing."""
        self.actor = context.actor
        if not self.actor:
            raise ConfigError(["GITHUB_ACTOR is required"])
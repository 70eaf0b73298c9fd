"""Check that the actor running a workflow holds one of the allowed repository permissions."""

from __future__ import annotations

import json
import logging
from typing import Iterable

from ..command import Command, CommandError, GitHubClient
from ..config import ValidatePermissionsConfig
from ..flags import FlagSet, GitHubFlags, RetryFlags

logger = logging.getLogger(__name__)


def _quoted_list(items: Iterable[str]) -> str:
    return "[" + " ".join(json.dumps(item, ensure_ascii=False) for item in items) + "]"


class ValidatePermissionsCommand(Command):
    """Fails unless the workflow actor has one of the allowed permission levels."""

    description = (
        "Validate a list of required permissions for the actor running the current GitHub workflow"
    )

    def __init__(
        self,
        *,
        github_client: GitHubClient | None = None,
        config: ValidatePermissionsConfig | None = None,
        allowed_permissions: list[str] | None = None,
        github_flags: GitHubFlags | None = None,
        retry_flags: RetryFlags | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.github_client = github_client
        self.config = config
        self.allowed_permissions = list(allowed_permissions or [])
        self.github_flags = github_flags or GitHubFlags()
        self.retry_flags = retry_flags or RetryFlags()

    def flags(self) -> FlagSet:
        """Build the flag set for this command, with its post-parse checks."""
        flag_set = self._new_flag_set()
        self.github_flags.register(flag_set)
        self.retry_flags.register(flag_set)

        section = flag_set.new_section("COMMAND OPTIONS")
        section.add_flag(
            "allowed-permissions",
            kind="string_slice",
            dest=(self, "allowed_permissions"),
            example="admin, write",
            usage="The list of allowed permissions to validate against.",
        )

        def validate() -> list[str]:
            errors = []
            if not self.github_flags.github_owner:
                errors.append("missing flag: github-owner is required")
            if not self.github_flags.github_repo:
                errors.append("missing flag: github-repo is required")
            return errors

        flag_set.after_parse(validate)
        return flag_set

    def process(self) -> None:
        """Look up the actor's permission level; raise CommandError if it is not allowed."""
        if self.config is None:
            raise CommandError("missing configuration")

        owner, repo = self.github_flags.github_owner, self.github_flags.github_repo
        actor = self.config.actor
        logger.debug("checking required permissions (owner=%s repo=%s actor=%s)", owner, repo, actor)

        try:
            permission = self.github_client.repo_user_permission_level(owner, repo, actor)
        except CommandError as exc:
            raise CommandError(f"failed to get repo permissions: {exc}") from exc

        if permission not in self.allowed_permissions:
            required = sorted(self.allowed_permissions)
            raise CommandError(
                f"{actor} does not have the required permissions to run this command."
                f"\n\nRequired permissions are {_quoted_list(required)}"
            )
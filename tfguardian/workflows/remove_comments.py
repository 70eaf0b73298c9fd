"""Remove earlier Guardian comments from a pull request."""

from __future__ import annotations

import json
import logging
from typing import Iterable

from ..command import Command, CommandError, GitHubClient
from ..flags import FlagSet, GitHubFlags, RetryFlags
from ..plan import COMMENT_PREFIX as PLAN_COMMENT_PREFIX

logger = logging.getLogger(__name__)

APPLY_COMMENT_PREFIX = "**`🔱 Guardian 🔱 APPLY`** -"

COMMAND_COMMENT_PREFIXES = {
    "apply": APPLY_COMMENT_PREFIX,
    "plan": PLAN_COMMENT_PREFIX,
}

ALLOWED_COMMANDS = sorted(COMMAND_COMMENT_PREFIXES)

_PER_PAGE = 100


def _quoted_list(items: Iterable[str]) -> str:
    return "[" + " ".join(json.dumps(item, ensure_ascii=False) for item in items) + "]"


class RemoveGuardianCommentsCommand(Command):
    """Deletes pull request comments left by the selected Guardian commands."""

    description = "Remove previous Guardian comments from a pull request"

    def __init__(
        self,
        *,
        github_client: GitHubClient | None = None,
        pull_request_number: int = 0,
        for_commands: list[str] | None = None,
        github_flags: GitHubFlags | None = None,
        retry_flags: RetryFlags | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.github_client = github_client
        self.pull_request_number = pull_request_number
        self.for_commands = list(for_commands or [])
        self.github_flags = github_flags or GitHubFlags()
        self.retry_flags = retry_flags or RetryFlags()

    def flags(self) -> FlagSet:
        """Build the flag set for this command, with its post-parse checks."""
        flag_set = self._new_flag_set()
        self.github_flags.register(flag_set)
        self.retry_flags.register(flag_set)

        section = flag_set.new_section("COMMAND OPTIONS")
        section.add_flag(
            "pull-request-number",
            kind="int",
            dest=(self, "pull_request_number"),
            example="100",
            usage="The GitHub pull request number to remove plan comments from.",
        )
        section.add_flag(
            "for-command",
            kind="string_slice",
            dest=(self, "for_commands"),
            example="plan",
            usage=(
                "The Guardian command to remove comments for. "
                f"Valid values are {_quoted_list(ALLOWED_COMMANDS)}"
            ),
        )

        def validate() -> list[str]:
            errors = []
            if not self.github_flags.github_owner:
                errors.append("missing flag: github-owner is required")
            if not self.github_flags.github_repo:
                errors.append("missing flag: github-repo is required")
            if self.pull_request_number <= 0:
                errors.append("missing flag: pull-request-number is required")
            if not self.for_commands:
                errors.append("missing flag: for-command is required")
            unknown = [name for name in self.for_commands if name not in COMMAND_COMMENT_PREFIXES]
            if unknown:
                errors.append(
                    f"invalid value(s) for-command: {_quoted_list(unknown)} "
                    f"must be one of {_quoted_list(ALLOWED_COMMANDS)}"
                )
            return errors

        flag_set.after_parse(validate)
        return flag_set

    def process(self) -> None:
        """Delete every matching comment, page by page; raise CommandError on failure."""
        owner, repo = self.github_flags.github_owner, self.github_flags.github_repo
        logger.debug(
            "removing outdated comments (owner=%s repo=%s pull_request=%s commands=%s)",
            owner,
            repo,
            self.pull_request_number,
            self.for_commands,
        )

        prefixes = [
            COMMAND_COMMENT_PREFIXES[name]
            for name in self.for_commands
            if name in COMMAND_COMMENT_PREFIXES
        ]

        page_number = 1
        while True:
            try:
                page = self.github_client.list_issue_comments(
                    owner, repo, self.pull_request_number, page_number, _PER_PAGE
                )
            except CommandError as exc:
                raise CommandError(f"failed to list comments: {exc}") from exc

            if not page.comments:
                return

            for comment in page.comments:
                if not any(comment.body.startswith(prefix) for prefix in prefixes):
                    continue
                try:
                    self.github_client.delete_issue_comment(owner, repo, comment.id)
                except CommandError as exc:
                    raise CommandError(f"failed to delete comment: {exc}") from exc

            if page.next_page is None:
                return
            page_number = page.next_page
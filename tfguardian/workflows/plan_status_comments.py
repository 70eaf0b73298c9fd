"""Post a summary comment on a pull request once the plan jobs have finished."""

from __future__ import annotations

import logging

from ..command import Command, CommandError, GitHubClient
from ..config import PlanStatusCommentsConfig
from ..flags import FlagSet, GitHubFlags, RetryFlags
from ..plan import COMMENT_PREFIX

logger = logging.getLogger(__name__)

_INDETERMINATE_STATUSES = ("skipped", "cancelled")


class PlanStatusCommentCommand(Command):
    """Reports the overall plan status, taken from the init and plan job results."""

    description = "Remove previous Guardian plan comments from a pull request"

    def __init__(
        self,
        *,
        github_client: GitHubClient | None = None,
        config: PlanStatusCommentsConfig | None = None,
        pull_request_number: int = 0,
        init_result: str = "",
        plan_result: str = "",
        github_flags: GitHubFlags | None = None,
        retry_flags: RetryFlags | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.github_client = github_client
        self.config = config
        self.github_log_url = ""
        self.pull_request_number = pull_request_number
        self.init_result = init_result
        self.plan_result = plan_result
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
            "init-result",
            kind="string",
            dest=(self, "init_result"),
            example="success",
            usage="The Guardian init job result status.",
        )
        section.add_flag(
            "plan-result",
            kind="string",
            dest=(self, "plan_result"),
            example="failure",
            usage="The Guardian plan job result status.",
        )

        def validate() -> list[str]:
            errors = []
            if not self.github_flags.github_owner:
                errors.append("missing flag: github-owner is required")
            if not self.github_flags.github_repo:
                errors.append("missing flag: github-repo is required")
            if self.pull_request_number <= 0:
                errors.append("missing flag: pull-request-number is required")
            if not self.init_result:
                errors.append("missing flag: init-result is required")
            if not self.plan_result:
                errors.append("missing flag: plan-result is required")
            return errors

        flag_set.after_parse(validate)
        return flag_set

    def process(self) -> None:
        """Comment on the pull request with the plan status; raise CommandError on failure."""
        if self.config is None:
            raise CommandError("missing configuration")

        owner, repo = self.github_flags.github_owner, self.github_flags.github_repo
        logger.debug(
            "determining plan status (owner=%s repo=%s init=%s plan=%s)",
            owner,
            repo,
            self.init_result,
            self.plan_result,
        )

        self.github_log_url = (
            f"[[logs]({self.config.server_url}/{owner}/{repo}/actions/runs/"
            f"{self.config.run_id}/attempts/{self.config.run_attempt})]"
        )
        logger.debug("computed github log url: %s", self.github_log_url)

        init, plan = self.init_result, self.plan_result

        # Without a plan diff no per-directory comments exist, so say it went well.
        if init == "success" and plan == "success":
            self._comment(f"{COMMENT_PREFIX} 🟩 Plan completed successfully. {self.github_log_url}")
            return

        # The plan job has already commented on the failing directory.
        if init == "failure" or plan == "failure":
            raise CommandError("init or plan has one or more failures")

        if init == "success" and plan == "skipped":
            self._comment(
                f"{COMMENT_PREFIX} 🟦 No Terraform changes detect, planning skipped. "
                f"{self.github_log_url}"
            )
            return

        if init in _INDETERMINATE_STATUSES or plan in _INDETERMINATE_STATUSES:
            self._comment(
                f"{COMMENT_PREFIX} 🟨 Unable to determine plan status. {self.github_log_url}"
            )
            raise CommandError(
                "unable to determine plan status, init and/or plan was skipped or cancelled"
            )

    def _comment(self, body: str) -> None:
        try:
            self.github_client.create_issue_comment(
                self.github_flags.github_owner,
                self.github_flags.github_repo,
                self.pull_request_number,
                body,
            )
        except CommandError as exc:
            raise CommandError(f"failed to create plan status comment: {exc}") from exc
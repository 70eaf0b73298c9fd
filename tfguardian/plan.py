"""Run Terraform plan for a directory and report the result on the pull request."""

from __future__ import annotations

import io
import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Mapping

from .command import (
    Command,
    CommandError,
    GitHubClient,
    IssueComment,
    StorageClient,
    TerraformClient,
)
from .config import PlanConfig
from .flags import CommonFlags, FlagSet, GitHubFlags, RetryFlags, format_duration, parse_duration

logger = logging.getLogger(__name__)

COMMENT_PREFIX = "**`🔱 Guardian 🔱 PLAN`** -"
GITHUB_MAX_COMMENT_LENGTH = 65536

_DETAILS_TEMPLATE = "\n\n<details>\n<summary>Details</summary>\n\n```diff\n\n%s\n```\n</details>"
_TRUNCATION_MESSAGE = "\n\nMessage has been truncated. See workflow logs to view the full message."
_ELLIPSES = "..."


@dataclass
class RunResult:
    """The outcome of a plan run."""

    has_changes: bool = False
    comment_details: str = ""


class _PlanStepError(CommandError):
    def __init__(self, message: str, result: RunResult) -> None:
        super().__init__(message)
        self.result = result


class _Tee:
    def __init__(self, *streams: IO[str]) -> None:
        self._streams = streams

    def write(self, text: str) -> int:
        for stream in self._streams:
            stream.write(text)
        return len(text)

    def flush(self) -> None:
        for stream in self._streams:
            stream.flush()


@dataclass
class _StepOutcome:
    exit_code: int | None
    error: CommandError | None
    stdout: str
    stderr: str

    @property
    def details(self) -> str:
        return self.stderr or self.stdout


def _unchanged(text: str) -> str:
    return text


class PlanCommand(Command):
    """Runs Terraform plan for a directory and stores the plan file."""

    def __init__(
        self,
        *,
        github_client: GitHubClient | None = None,
        storage_client: StorageClient | None = None,
        terraform_client: TerraformClient | None = None,
        config: PlanConfig | None = None,
        directory: str = "",
        child_path: str = "",
        plan_filename: str = "",
        pull_request_number: int = 0,
        bucket_name: str = "",
        allow_lockfile_changes: bool = False,
        lock_timeout: float = parse_duration("10m"),
        github_flags: GitHubFlags | None = None,
        retry_flags: RetryFlags | None = None,
        common_flags: CommonFlags | None = None,
        output_formatter: Callable[[str], str] = _unchanged,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.github_client = github_client
        self.storage_client = storage_client
        self.terraform_client = terraform_client
        self.config = config
        self.directory = directory
        self.child_path = child_path
        self.plan_filename = plan_filename
        self.github_log_url = ""
        self.pull_request_number = pull_request_number
        self.bucket_name = bucket_name
        self.allow_lockfile_changes = allow_lockfile_changes
        self.lock_timeout = lock_timeout
        self.github_flags = github_flags or GitHubFlags()
        self.retry_flags = retry_flags or RetryFlags()
        self.common_flags = common_flags or CommonFlags()
        self.output_formatter = output_formatter

    def flags(self) -> FlagSet:
        """Build the flag set for this command, with its post-parse checks."""
        flag_set = self._new_flag_set()
        self.github_flags.register(flag_set)
        self.retry_flags.register(flag_set)
        self.common_flags.register(flag_set)

        section = flag_set.new_section("COMMAND OPTIONS")
        section.add_flag(
            "pull-request-number",
            kind="int",
            dest=(self, "pull_request_number"),
            example="100",
            usage="The GitHub pull request number associated with this plan run.",
        )
        section.add_flag(
            "bucket-name",
            kind="string",
            dest=(self, "bucket_name"),
            example="my-guardian-state-bucket",
            usage="The Google Cloud Storage bucket name to store Guardian plan files.",
        )
        section.add_flag(
            "allow-lockfile-changes",
            kind="bool",
            dest=(self, "allow_lockfile_changes"),
            example="true",
            usage="Allow modification of the Terraform lockfile.",
        )
        section.add_flag(
            "lock-timeout",
            kind="duration",
            dest=(self, "lock_timeout"),
            default=parse_duration("10m"),
            example="10m",
            usage=(
                "The duration Terraform should wait to obtain a lock when running "
                "commands that modify state."
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
            if not self.bucket_name:
                errors.append("missing flag: bucket-name is required")
            return errors

        flag_set.after_parse(validate)
        return flag_set

    def process(self) -> None:
        """Plan, upload the plan file and report the outcome; raise CommandError on failure."""
        if self.config is None:
            raise CommandError("missing configuration")

        self.out("Starting Guardian plan")
        if not self.plan_filename:
            self.plan_filename = "tfplan.binary"

        owner, repo = self.github_flags.github_owner, self.github_flags.github_repo
        self.github_log_url = (
            f"[[logs]({self.config.server_url}/{owner}/{repo}/actions/runs/"
            f"{self.config.run_id}/attempts/{self.config.run_attempt})]"
        )
        logger.debug("computed github log url: %s", self.github_log_url)

        try:
            start_comment = self._create_start_comment()
        except CommandError as exc:
            raise CommandError(f"failed to write start comment: {exc}") from exc

        errors: list[str] = []
        result_error: CommandError | None = None
        try:
            result = self._terraform_plan()
        except _PlanStepError as exc:
            result, result_error = exc.result, exc
            errors.append(f"failed to run Guardian plan: {exc}")

        try:
            self._update_result_comment(start_comment, result, result_error)
        except CommandError as exc:
            errors.append(f"failed to write result comment: {exc}")

        if errors:
            raise CommandError("\n".join(errors))

    def _create_start_comment(self) -> IssueComment | None:
        if not self.is_github_actions:
            logger.debug("skipping start comment, not running in github actions")
            return None

        self.out("Creating start comment")
        try:
            return self.github_client.create_issue_comment(
                self.github_flags.github_owner,
                self.github_flags.github_repo,
                self.pull_request_number,
                f"{COMMENT_PREFIX} 🟨 Running for dir: `{self.child_path}` {self.github_log_url}",
            )
        except CommandError as exc:
            raise CommandError(f"failed to create start comment: {exc}") from exc

    def _update_result_comment(
        self,
        start_comment: IssueComment | None,
        result: RunResult,
        result_error: Exception | None,
    ) -> None:
        if not self.is_github_actions:
            logger.debug("skipping update result comment, not running in github actions")
            return

        self.out("Updating result comment")
        body = self.get_message_body(result, result_error)
        try:
            self.github_client.update_issue_comment(
                self.github_flags.github_owner,
                self.github_flags.github_repo,
                start_comment.id,
                body,
            )
        except CommandError as exc:
            raise CommandError(f"failed to update plan comment: {exc}") from exc

    def get_message_body(self, result: RunResult, result_error: Exception | None) -> str:
        """Compose the pull request comment for a result, kept within GitHub's size limit."""
        if not result.has_changes and result_error is None:
            return f"{COMMENT_PREFIX} 🟦 No changes for dir: `{self.child_path}` {self.github_log_url}"

        if result_error is not None:
            comment = (
                f"{COMMENT_PREFIX} 🟥 Failed for dir: `{self.child_path}` {self.github_log_url}"
                f"\n\n<details>\n<summary>Error</summary>\n\n```\n\n{result_error}\n```\n</details>"
            )
        else:
            comment = f"{COMMENT_PREFIX} 🟩 Successful for dir: `{self.child_path}` {self.github_log_url}"

        details = result.comment_details
        if details:
            capped_length = (
                GITHUB_MAX_COMMENT_LENGTH
                - len(_ELLIPSES)
                - len(_TRUNCATION_MESSAGE)
                - len(comment)
                - len(_DETAILS_TEMPLATE)
                + 2
            )
            truncated = len(details) > capped_length
            if truncated:
                details = details[:capped_length] + _ELLIPSES
            comment += _DETAILS_TEMPLATE % (details,)
            if truncated:
                comment += _TRUNCATION_MESSAGE
        return comment

    def _step(self, title: str, action: Callable[[IO[str], IO[str]], int]) -> _StepOutcome:
        captured_out, captured_err = io.StringIO(), io.StringIO()
        error: CommandError | None = None
        with self.actions_group(title):
            try:
                exit_code = action(
                    _Tee(self.stdout, captured_out), _Tee(self.stderr, captured_err)
                )
                if exit_code is None:
                    exit_code = 0
            except CommandError as exc:
                error, exit_code = exc, exc.exit_code
        return _StepOutcome(exit_code, error, captured_out.getvalue(), captured_err.getvalue())

    def _terraform_plan(self) -> RunResult:
        terraform = self.terraform_client
        lock_timeout = format_duration(self.lock_timeout)
        self.out("Running Terraform commands")

        outcome = self._step(
            "Check Terraform Format",
            lambda out, err: terraform.format(
                out, err, check=True, diff=True, recursive=True, no_color=True
            ),
        )
        if outcome.error:
            raise _PlanStepError(
                f"failed to check formatting: {outcome.error}",
                RunResult(comment_details=outcome.details),
            ) from outcome.error

        lockfile_mode = "none" if self.allow_lockfile_changes else "readonly"
        outcome = self._step(
            "Initializing Terraform",
            lambda out, err: terraform.init(
                out,
                err,
                input=False,
                no_color=True,
                lockfile=lockfile_mode,
                lock_timeout=lock_timeout,
            ),
        )
        if outcome.error:
            raise _PlanStepError(
                f"failed to initialize: {outcome.error}",
                RunResult(comment_details=outcome.details),
            ) from outcome.error

        outcome = self._step(
            "Validating Terraform",
            lambda out, err: terraform.validate(out, err, no_color=True),
        )
        if outcome.error:
            raise _PlanStepError(
                f"failed to validate: {outcome.error}",
                RunResult(comment_details=outcome.details),
            ) from outcome.error

        outcome = self._step(
            "Planning Terraform",
            lambda out, err: terraform.plan(
                out,
                err,
                out_file=self.plan_filename,
                input=False,
                no_color=True,
                detailed_exitcode=True,
                lock_timeout=lock_timeout,
            ),
        )
        plan_exit_code = outcome.exit_code
        # Detailed exit codes: 0 no diff, 1 failure, 2 success with diff.
        has_changes = plan_exit_code == 2
        if outcome.error and not has_changes:
            raise _PlanStepError(
                f"failed to plan: {outcome.error}",
                RunResult(comment_details=outcome.details),
            ) from outcome.error

        outcome = self._step(
            "Formatting output",
            lambda out, err: terraform.show(out, err, file=self.plan_filename, no_color=True),
        )
        if outcome.error:
            raise _PlanStepError(
                f"failed to terraform show: {outcome.error}",
                RunResult(comment_details=outcome.stderr, has_changes=has_changes),
            ) from outcome.error

        github_output = self.output_formatter(outcome.stdout)

        plan_file_path = posixpath.join(self.child_path, self.plan_filename)
        try:
            plan_data = Path(plan_file_path).read_bytes()
        except OSError as exc:
            raise _PlanStepError(
                f"failed to read plan binary: {exc}", RunResult(has_changes=has_changes)
            ) from exc

        owner, repo = self.github_flags.github_owner, self.github_flags.github_repo
        object_path = (
            f"guardian-plans/{owner}/{repo}/{self.pull_request_number}/{plan_file_path}"
        )
        self.out(f"Uploading plan file to gs://{self.bucket_name}/{object_path}")

        try:
            self._upload_plan(object_path, plan_data, plan_exit_code or 0)
        except CommandError as exc:
            raise _PlanStepError(
                f"failed to upload plan data: {exc}", RunResult(has_changes=has_changes)
            ) from exc

        return RunResult(has_changes=has_changes, comment_details=github_output)

    def _upload_plan(self, path: str, data: bytes, exit_code: int) -> None:
        metadata: Mapping[str, str] = {"plan_exit_code": str(exit_code)}
        try:
            self.storage_client.upload_object(
                self.bucket_name,
                path,
                data,
                content_type="application/octet-stream",
                metadata=metadata,
                allow_overwrite=True,
            )
        except CommandError as exc:
            raise CommandError(f"failed to upload plan file: {exc}") from exc
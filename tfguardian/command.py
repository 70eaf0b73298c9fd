"""Shared pieces for commands: client interfaces, output streams and workflow log groups."""

from __future__ import annotations

import io
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO, Any, Iterator, Mapping, Protocol

from .flags import FlagSet


class CommandError(Exception):
    """Raised when a command or one of the services it calls fails.

    ``exit_code`` carries the exit status of an external tool when there is one.
    """

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass
class IssueComment:
    """A comment on a GitHub issue or pull request."""

    id: int
    body: str = ""


@dataclass
class IssueCommentPage:
    """One page of issue comments; ``next_page`` is None on the last page."""

    comments: list[IssueComment] = field(default_factory=list)
    next_page: int | None = None


class GitHubClient(Protocol):
    """The GitHub operations commands rely on. Failures raise CommandError."""

    def create_issue_comment(self, owner: str, repo: str, number: int, body: str) -> IssueComment:
        """Create a comment on an issue or pull request and return it."""

    def update_issue_comment(self, owner: str, repo: str, comment_id: int, body: str) -> None:
        """Replace the body of an existing comment."""

    def delete_issue_comment(self, owner: str, repo: str, comment_id: int) -> None:
        """Delete a comment."""

    def list_issue_comments(
        self, owner: str, repo: str, number: int, page: int, per_page: int
    ) -> IssueCommentPage:
        """Return one page of the comments on an issue or pull request."""

    def repo_user_permission_level(self, owner: str, repo: str, user: str) -> str:
        """Return the permission level ``user`` holds on the repository."""


class StorageClient(Protocol):
    """Object storage used to keep plan files. Failures raise CommandError."""

    def upload_object(
        self,
        bucket: str,
        name: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
        allow_overwrite: bool,
    ) -> None:
        """Store ``data`` under ``name`` in ``bucket``."""


class TerraformClient(Protocol):
    """Runs Terraform subcommands, writing their output to the given streams.

    Each call returns the exit code; a failed run raises CommandError with
    ``exit_code`` set.
    """

    def format(self, stdout: IO[str], stderr: IO[str], **kwargs: Any) -> int:
        """Run ``terraform fmt``."""

    def init(self, stdout: IO[str], stderr: IO[str], **kwargs: Any) -> int:
        """Run ``terraform init``."""

    def validate(self, stdout: IO[str], stderr: IO[str], **kwargs: Any) -> int:
        """Run ``terraform validate``."""

    def plan(self, stdout: IO[str], stderr: IO[str], **kwargs: Any) -> int:
        """Run ``terraform plan``."""

    def show(self, stdout: IO[str], stderr: IO[str], **kwargs: Any) -> int:
        """Run ``terraform show``."""


class Command:
    """Base for commands: owns the output streams and the workflow-group switch."""

    def __init__(
        self,
        *,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
        stdin: IO[str] | None = None,
        is_github_actions: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.stdout: IO[str] = stdout if stdout is not None else sys.stdout
        self.stderr: IO[str] = stderr if stderr is not None else sys.stderr
        self.stdin: IO[str] = stdin if stdin is not None else sys.stdin
        self.is_github_actions = is_github_actions
        self.env = env

    def _new_flag_set(self) -> FlagSet:
        return FlagSet(env=self.env)

    def out(self, message: str) -> None:
        """Write ``message`` as a line on standard output."""
        print(message, file=self.stdout)

    def pipe(self) -> tuple[io.StringIO, io.StringIO, io.StringIO]:
        """Swap the streams for in-memory buffers and return (stdin, stdout, stderr)."""
        stdin, stdout, stderr = io.StringIO(), io.StringIO(), io.StringIO()
        self.stdin, self.stdout, self.stderr = stdin, stdout, stderr
        return stdin, stdout, stderr

    @contextmanager
    def actions_group(self, title: str) -> Iterator[None]:
        """Fold the output written inside the block into a workflow log group."""
        if not self.is_github_actions:
            yield
            return
        self.stdout.write(f"::group::{title}\n")
        try:
            yield
        finally:
            self.stdout.write("::endgroup::\n")
import io

import pytest

from tfguardian.command import CommandError, IssueComment
from tfguardian.config import PlanStatusCommentsConfig
from tfguardian.flags import FlagError, GitHubFlags
from tfguardian.workflows.plan_status_comments import PlanStatusCommentCommand

LOG_URL = "[[logs](https://github.com/owner/repo/actions/runs/100/attempts/1)]"


class FakeGitHub:
    def __init__(self, create_error=None):
        self.create_error = create_error
        self.requests = []

    def create_issue_comment(self, owner, repo, number, body):
        self.requests.append(("CreateIssueComment", owner, repo, number, body))
        if self.create_error:
            raise CommandError(self.create_error)
        return IssueComment(id=1, body=body)


def make_command(client, number, init_result, plan_result):
    return PlanStatusCommentCommand(
        github_client=client,
        config=PlanStatusCommentsConfig(server_url="https://github.com", run_id=100, run_attempt=1),
        github_flags=GitHubFlags(github_owner="owner", github_repo="repo"),
        pull_request_number=number,
        init_result=init_result,
        plan_result=plan_result,
        stdout=io.StringIO(),
        stderr=io.StringIO(),
    )


@pytest.mark.parametrize(
    "args, expected",
    [
        (
            ["-pull-request-number=1", "-init-result=success", "-plan-result=success"],
            "missing flag: github-owner is required\nmissing flag: github-repo is required",
        ),
        (
            ["-github-owner=owner", "-github-repo=repo", "-init-result=success", "-plan-result=success"],
            "missing flag: pull-request-number is required",
        ),
        (
            ["-github-owner=owner", "-github-repo=repo", "-pull-request-number=1", "-plan-result=success"],
            "missing flag: init-result is required",
        ),
        (
            ["-github-owner=owner", "-github-repo=repo", "-pull-request-number=1", "-init-result=success"],
            "missing flag: plan-result is required",
        ),
    ],
)
def test_after_parse(args, expected):
    command = PlanStatusCommentCommand(env={})
    flag_set = command.flags()
    with pytest.raises(FlagError) as excinfo:
        flag_set.parse(args)
    assert expected in str(excinfo.value)


def test_flags_parse_valid_arguments():
    command = PlanStatusCommentCommand(env={"GITHUB_TOKEN": "token"})
    rest = command.flags().parse(
        [
            "-github-owner=owner",
            "-github-repo=repo",
            "-pull-request-number=7",
            "-init-result=success",
            "-plan-result=skipped",
        ]
    )
    assert rest == []
    assert command.pull_request_number == 7
    assert command.init_result == "success"
    assert command.plan_result == "skipped"


def test_process_success():
    client = FakeGitHub()
    make_command(client, 1, "success", "success").process()
    assert client.requests == [
        (
            "CreateIssueComment",
            "owner",
            "repo",
            1,
            f"**`🔱 Guardian 🔱 PLAN`** - 🟩 Plan completed successfully. {LOG_URL}",
        )
    ]


def test_process_failure():
    client = FakeGitHub()
    with pytest.raises(CommandError, match="init or plan has one or more failures"):
        make_command(client, 2, "failure", "failure").process()
    assert client.requests == []


def test_process_indeterminate():
    client = FakeGitHub()
    with pytest.raises(
        CommandError,
        match="unable to determine plan status, init and/or plan was skipped or cancelled",
    ):
        make_command(client, 3, "cancelled", "skipped").process()
    assert client.requests == [
        (
            "CreateIssueComment",
            "owner",
            "repo",
            3,
            f"**`🔱 Guardian 🔱 PLAN`** - 🟨 Unable to determine plan status. {LOG_URL}",
        )
    ]


def test_process_handles_errors():
    client = FakeGitHub(create_error="error creating comment")
    with pytest.raises(CommandError) as excinfo:
        make_command(client, 4, "success", "success").process()
    assert str(excinfo.value) == "failed to create plan status comment: error creating comment"
    assert client.requests == [
        (
            "CreateIssueComment",
            "owner",
            "repo",
            4,
            f"**`🔱 Guardian 🔱 PLAN`** - 🟩 Plan completed successfully. {LOG_URL}",
        )
    ]


def test_process_plan_skipped():
    client = FakeGitHub()
    make_command(client, 5, "success", "skipped").process()
    assert client.requests == [
        (
            "CreateIssueComment",
            "owner",
            "repo",
            5,
            "**`🔱 Guardian 🔱 PLAN`** - 🟦 No Terraform changes detect, planning skipped. "
            f"{LOG_URL}",
        )
    ]


def test_process_requires_config():
    command = PlanStatusCommentCommand(github_client=FakeGitHub())
    with pytest.raises(CommandError, match="missing configuration"):
        command.process()
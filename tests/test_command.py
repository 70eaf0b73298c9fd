import pytest

from tfguardian.command import Command, CommandError, IssueComment, IssueCommentPage


def test_out_writes_a_line():
    command = Command()
    _, stdout, _ = command.pipe()
    command.out("hello")
    assert stdout.getvalue() == "hello\n"


def test_pipe_replaces_streams():
    command = Command()
    stdin, stdout, stderr = command.pipe()
    assert command.stdout is stdout
    assert command.stderr is stderr
    assert command.stdin is stdin
    command.out("first")
    command.out("second")
    assert stdout.getvalue().splitlines() == ["first", "second"]
    assert stderr.getvalue() == ""


def test_actions_group_enabled_wraps_output():
    command = Command(is_github_actions=True)
    _, stdout, _ = command.pipe()
    with command.actions_group("Planning Terraform"):
        command.out("inside")
    assert stdout.getvalue().splitlines() == [
        "::group::Planning Terraform",
        "inside",
        "::endgroup::",
    ]


def test_actions_group_disabled_adds_nothing():
    command = Command(is_github_actions=False)
    _, stdout, _ = command.pipe()
    with command.actions_group("Planning Terraform"):
        command.out("inside")
    assert stdout.getvalue() == "inside\n"


def test_actions_group_closes_on_error():
    command = Command(is_github_actions=True)
    _, stdout, _ = command.pipe()
    with pytest.raises(ValueError):
        with command.actions_group("Step"):
            raise ValueError("boom")
    assert stdout.getvalue().endswith("::endgroup::\n")
    assert stdout.getvalue().startswith("::group::Step\n")


def test_command_error_carries_exit_code():
    error = CommandError("failed to run terraform init", exit_code=1)
    assert str(error) == "failed to run terraform init"
    assert error.exit_code == 1
    assert CommandError("plain").exit_code is None


def test_issue_comment_page_defaults():
    page = IssueCommentPage()
    assert page.comments == []
    assert page.next_page is None
    filled = IssueCommentPage([IssueComment(id=3, body="text")], next_page=2)
    assert filled.comments[0].body == "text"
    assert filled.next_page == 2
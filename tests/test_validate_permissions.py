import pytest

from tfguardian.command import CommandError
from tfguardian.config import ValidatePermissionsConfig
from tfguardian.flags import FlagError, GitHubFlags
from tfguardian.workflows.validate_permissions import ValidatePermissionsCommand


class FakeGitHub:
    def __init__(self, permission="read", error=None):
        self.permission = permission
        self.error = error
        self.reqs = []

    def repo_user_permission_level(self, owner, repo, user):
        self.reqs.append(("RepoUserPermissionLevel", (owner, repo, user)))
        if self.error is not None:
            raise self.error
        return self.permission


def make_command(client, allowed, actor="testuser"):
    command = ValidatePermissionsCommand(
        github_client=client,
        config=ValidatePermissionsConfig(actor=actor),
        allowed_permissions=allowed,
        github_flags=GitHubFlags(github_owner="owner", github_repo="repo"),
    )
    command.pipe()
    return command


def test_after_parse_requires_github_flags():
    command = ValidatePermissionsCommand(env={})
    with pytest.raises(FlagError) as info:
        command.flags().parse([])
    assert (
        "missing flag: github-owner is required\nmissing flag: github-repo is required"
        in str(info.value)
    )


def test_after_parse_reads_allowed_permissions():
    command = ValidatePermissionsCommand(env={})
    command.flags().parse(
        [
            "-github-token=token",
            "-github-owner=owner",
            "-github-repo=repo",
            "-allowed-permissions=admin, write",
        ]
    )
    assert command.allowed_permissions == ["admin", "write"]


def test_process_allowed():
    client = FakeGitHub()
    command = make_command(client, ["read"])
    command.process()
    assert client.reqs == [("RepoUserPermissionLevel", ("owner", "repo", "testuser"))]


def test_process_denied():
    client = FakeGitHub()
    command = make_command(client, ["admin"])
    with pytest.raises(CommandError) as info:
        command.process()
    assert str(info.value) == (
        "testuser does not have the required permissions to run this command."
        '\n\nRequired permissions are ["admin"]'
    )
    assert client.reqs == [("RepoUserPermissionLevel", ("owner", "repo", "testuser"))]


def test_process_denied_lists_sorted_permissions():
    client = FakeGitHub(permission="read")
    command = make_command(client, ["write", "admin"])
    with pytest.raises(CommandError) as info:
        command.process()
    assert str(info.value).endswith('Required permissions are ["admin" "write"]')


def test_process_wraps_client_error():
    client = FakeGitHub(error=CommandError("lookup failed"))
    command = make_command(client, ["read"])
    with pytest.raises(CommandError) as info:
        command.process()
    assert str(info.value) == "failed to get repo permissions: lookup failed"
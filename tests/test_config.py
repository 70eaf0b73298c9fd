import pytest

from tfguardian.config import (
    ConfigError,
    GitHubContext,
    PlanConfig,
    PlanStatusCommentsConfig,
    ValidatePermissionsConfig,
)

SERVER_URL = "https://ghe.example.com"
RUN_ERRORS = "GITHUB_SERVER_URL is required\nGITHUB_RUN_ID is required\nGITHUB_RUN_ATTEMPT is required"


def test_plan_config_success():
    config = PlanConfig()
    config.map_github_context(GitHubContext(server_url=SERVER_URL, run_id=100, run_attempt=1))
    assert config == PlanConfig(server_url=SERVER_URL, run_id=100, run_attempt=1)


def test_plan_config_error():
    config = PlanConfig()
    with pytest.raises(ConfigError) as exc_info:
        config.map_github_context(GitHubContext())
    assert str(exc_info.value) == RUN_ERRORS
    assert config == PlanConfig()


def test_plan_config_partial_error():
    config = PlanConfig()
    with pytest.raises(ConfigError) as exc_info:
        config.map_github_context(GitHubContext(server_url=SERVER_URL, run_id=100))
    assert exc_info.value.messages == ["GITHUB_RUN_ATTEMPT is required"]
    assert config.run_id == 100


def test_plan_status_comments_config_success():
    config = PlanStatusCommentsConfig()
    config.map_github_context(GitHubContext(server_url=SERVER_URL, run_id=1, run_attempt=1))
    assert config == PlanStatusCommentsConfig(server_url=SERVER_URL, run_id=1, run_attempt=1)


def test_plan_status_comments_config_error():
    config = PlanStatusCommentsConfig()
    with pytest.raises(ConfigError) as exc_info:
        config.map_github_context(GitHubContext())
    assert str(exc_info.value) == RUN_ERRORS
    assert config == PlanStatusCommentsConfig()


def test_validate_permissions_config_success():
    config = ValidatePermissionsConfig()
    config.map_github_context(GitHubContext(actor="actor"))
    assert config == ValidatePermissionsConfig(actor="actor")


def test_validate_permissions_config_error():
    config = ValidatePermissionsConfig()
    with pytest.raises(ConfigError) as exc_info:
        config.map_github_context(GitHubContext())
    assert str(exc_info.value) == "GITHUB_ACTOR is required"
    assert config == ValidatePermissionsConfig()
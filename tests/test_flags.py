from types import SimpleNamespace

import pytest

from tfguardian.flags import (
    CommonFlags,
    FlagError,
    FlagSet,
    GitHubFlags,
    RetryFlags,
    format_duration,
    parse_duration,
)


def _simple_set(kind="string", name="name", env_var=None, env=None, default=None):
    holder = SimpleNamespace()
    flag_set = FlagSet(env={} if env is None else env)
    section = flag_set.new_section("OPTIONS")
    section.add_flag(name, kind=kind, dest=(holder, "value"), env_var=env_var, default=default)
    return flag_set, holder


def test_equals_syntax_sets_value():
    flag_set, holder = _simple_set()
    flag_set.parse(["-name=value"])
    assert holder.value == "value"


def test_separate_value_and_double_dash():
    flag_set, holder = _simple_set()
    flag_set.parse(["--name", "value"])
    assert holder.value == "value"


def test_bare_bool_is_true_and_explicit_false():
    flag_set, holder = _simple_set(kind="bool")
    flag_set.parse(["-name"])
    assert holder.value is True
    flag_set.parse(["-name=false"])
    assert holder.value is False


def test_remaining_args_start_at_first_positional():
    flag_set, holder = _simple_set()
    rest = flag_set.parse(["-name=a", "plan", "-name=b"])
    assert rest == ["plan", "-name=b"]
    assert flag_set.args == ["plan", "-name=b"]
    assert holder.value == "a"


def test_double_dash_terminates_flags():
    flag_set, _ = _simple_set()
    assert flag_set.parse(["--", "-name=x"]) == ["-name=x"]


def test_unknown_flag_raises():
    flag_set, _ = _simple_set()
    with pytest.raises(FlagError, match="flag provided but not defined: -other"):
        flag_set.parse(["-other=1"])


def test_missing_argument_raises():
    flag_set, _ = _simple_set()
    with pytest.raises(FlagError, match="flag needs an argument: -name"):
        flag_set.parse(["-name"])


def test_invalid_int_raises():
    flag_set, _ = _simple_set(kind="int")
    with pytest.raises(FlagError, match="invalid value"):
        flag_set.parse(["-name=abc"])


def test_uint64_rejects_negative():
    flag_set, _ = _simple_set(kind="uint64")
    with pytest.raises(FlagError):
        flag_set.parse(["-name=-1"])


def test_int_values_parse():
    flag_set, holder = _simple_set(kind="int", default=-1)
    flag_set.parse([])
    assert holder.value == -1
    flag_set.parse(["-name=7"])
    assert holder.value == 7


def test_string_slice_splits_and_repeats():
    flag_set, holder = _simple_set(kind="string_slice")
    flag_set.parse(["-name=plan, apply", "-name=destroy"])
    assert holder.value == ["plan", "apply", "destroy"]


def test_parse_resets_to_defaults():
    flag_set, holder = _simple_set(kind="string_slice")
    flag_set.parse(["-name=plan"])
    flag_set.parse([])
    assert holder.value == []


def test_env_fallback_and_override():
    flag_set, holder = _simple_set(env_var="SOME_VAR", env={"SOME_VAR": "from-env"})
    flag_set.parse([])
    assert holder.value == "from-env"
    flag_set.parse(["-name=from-args"])
    assert holder.value == "from-args"


def test_duplicate_flag_rejected():
    flag_set, _ = _simple_set()
    with pytest.raises(ValueError):
        flag_set.new_section("MORE").add_flag("name", kind="string", dest=(SimpleNamespace(), "x"))


def test_after_parse_errors_are_joined():
    flag_set, _ = _simple_set()
    flag_set.after_parse(lambda: ["first"])
    flag_set.after_parse(lambda: ["second"])
    with pytest.raises(FlagError) as exc_info:
        flag_set.parse([])
    assert str(exc_info.value) == "first\nsecond"
    assert exc_info.value.messages == ["first", "second"]


def _github_set(env=None):
    flags = GitHubFlags()
    flag_set = FlagSet(env={} if env is None else env)
    flags.register(flag_set)
    return flag_set, flags


def test_github_requires_token_or_app():
    flag_set, _ = _github_set()
    with pytest.raises(FlagError, match="one of github token or github app id are required"):
        flag_set.parse([])


def test_github_token_and_app_conflict():
    flag_set, _ = _github_set()
    with pytest.raises(FlagError) as exc_info:
        flag_set.parse(
            [
                "-github-token=token",
                "-github-app-id=1",
                "-github-app-installation-id=2",
                "-github-app-private-key-pem=secret",
            ]
        )
    assert exc_info.value.messages == ["only one of github token or github app id are allowed"]


def test_github_app_requires_installation_and_key():
    flag_set, _ = _github_set()
    with pytest.raises(FlagError) as exc_info:
        flag_set.parse(["-github-app-id=1"])
    assert exc_info.value.messages == [
        "a github app installation id is required when using a github app id",
        "a github app private key is required when using a github app id",
    ]


def test_github_token_from_env():
    flag_set, flags = _github_set(env={"GITHUB_TOKEN": "token"})
    flag_set.parse(["-github-owner=owner", "-github-repo=repo"])
    assert flags.github_token == "token"
    assert (flags.github_owner, flags.github_repo) == ("owner", "repo")


def test_retry_defaults_and_overrides():
    flags = RetryFlags()
    flag_set = FlagSet(env={})
    flags.register(flag_set)
    flag_set.parse([])
    assert flags.retry_max_attempts == 3
    assert flags.retry_initial_delay == parse_duration("2s")
    assert flags.retry_max_delay == parse_duration("1m")
    flag_set.parse(["-retry-max-attempts=1", "-retry-initial-delay=10s", "-retry-max-delay=5m"])
    assert flags.retry_max_attempts == 1
    assert flags.retry_initial_delay == parse_duration("10s")
    assert flags.retry_max_delay == parse_duration("5m")


def test_common_dir_flag():
    flags = CommonFlags()
    flag_set = FlagSet(env={})
    flags.register(flag_set)
    flag_set.parse(["-dir=./terraform"])
    assert flags.directory == "./terraform"


def test_parse_duration_equivalences():
    assert parse_duration("1h30m") == parse_duration("90m")
    assert parse_duration("1.5h") == parse_duration("90m")
    assert parse_duration("500ms") * 2 == parse_duration("1s")
    assert parse_duration("-2s") == -parse_duration("2s")
    assert parse_duration("0") == 0


@pytest.mark.parametrize("text", ["", "10", "1x", "h", "-", ".s"])
def test_parse_duration_rejects_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


@pytest.mark.parametrize("text", ["10m", "1h30m", "2s", "500ms", "1.5s", "3h", "250µs", "7ns", "-5m"])
def test_duration_round_trip(text):
    seconds = parse_duration(text)
    assert parse_duration(format_duration(seconds)) == seconds


def test_format_duration_pinned():
    assert format_duration(parse_duration("10m")) == "10m0s"
    assert format_duration(0) == "0s"
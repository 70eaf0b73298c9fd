"""Command-line flag sets with sections, environment fallbacks and post-parse checks."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Callable, Iterable, Mapping

_NANOS_PER_SECOND = 10**9

_DURATION_UNITS = {
    "ns": 1,
    "us": 10**3,
    "µs": 10**3,
    "μs": 10**3,
    "ms": 10**6,
    "s": _NANOS_PER_SECOND,
    "m": 60 * _NANOS_PER_SECOND,
    "h": 3600 * _NANOS_PER_SECOND,
}

_DURATION_PART = re.compile(r"(\d*\.?\d*)(ns|us|µs|μs|ms|s|m|h)")

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


class FlagError(Exception):
    """Raised when flags cannot be parsed or fail validation."""

    def __init__(self, messages: str | Iterable[str]) -> None:
        if isinstance(messages, str):
            messages = [messages]
        self.messages = list(messages)
        super().__init__("\n".join(self.messages))


def parse_duration(text: str) -> float:
    """Parse a duration such as ``"1h30m"`` or ``"500ms"`` into seconds."""
    rest = text
    sign = 1
    if rest[:1] in ("+", "-"):
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f'invalid duration "{text}"')

    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        if match is None:
            raise ValueError(f'invalid duration "{text}"')
        number, unit = match.groups()
        if number in ("", "."):
            raise ValueError(f'invalid duration "{text}"')
        total += Fraction(number) * _DURATION_UNITS[unit]
        pos = match.end()
    return float(sign * total / _NANOS_PER_SECOND)


def _format_units(value: int, unit: int) -> str:
    whole, remainder = divmod(value, unit)
    if not remainder:
        return str(whole)
    width = len(str(unit)) - 1
    fraction = str(remainder).rjust(width, "0").rstrip("0")
    return f"{whole}.{fraction}"


def format_duration(seconds: float) -> str:
    """Render seconds the way durations are written on the command line, e.g. ``10m0s``."""
    nanos = round(Fraction(seconds) * _NANOS_PER_SECOND)
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)

    if nanos < _NANOS_PER_SECOND:
        if nanos < 10**3:
            return f"{sign}{nanos}ns"
        if nanos < 10**6:
            return f"{sign}{_format_units(nanos, 10**3)}µs"
        return f"{sign}{_format_units(nanos, 10**6)}ms"

    hours, nanos = divmod(nanos, _DURATION_UNITS["h"])
    minutes, nanos = divmod(nanos, _DURATION_UNITS["m"])
    secs = f"{_format_units(nanos, _NANOS_PER_SECOND)}s"
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}"
    if minutes:
        return f"{sign}{minutes}m{secs}"
    return f"{sign}{secs}"


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean {text!r}")


def _parse_int(text: str) -> int:
    return int(text, 0)


def _parse_int64(text: str) -> int:
    value = int(text, 0)
    if not -(2**63) <= value < 2**63:
        raise ValueError(f"value out of range: {text}")
    return value


def _parse_uint64(text: str) -> int:
    value = int(text, 0)
    if not 0 <= value < 2**64:
        raise ValueError(f"value out of range: {text}")
    return value


def _parse_slice(text: str) -> list[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


_CONVERTERS: dict[str, Callable[[str], Any]] = {
    "string": str,
    "bool": _parse_bool,
    "int": _parse_int,
    "int64": _parse_int64,
    "uint64": _parse_uint64,
    "duration": parse_duration,
    "string_slice": _parse_slice,
}

_ZERO_VALUES: dict[str, Any] = {
    "string": "",
    "bool": False,
    "int": 0,
    "int64": 0,
    "uint64": 0,
    "duration": 0.0,
    "string_slice": [],
}


@dataclass
class _Flag:
    name: str
    kind: str
    target: Any
    attribute: str
    default: Any
    env_var: str | None = None
    example: str | None = None
    usage: str = ""
    _replaced: bool = field(default=False, repr=False)

    def reset(self) -> None:
        value = list(self.default) if self.kind == "string_slice" else self.default
        setattr(self.target, self.attribute, value)
        self._replaced = False

    def set(self, text: str, *, from_args: bool) -> None:
        try:
            value = _CONVERTERS[self.kind](text)
        except ValueError as exc:
            raise FlagError(f'invalid value "{text}" for flag -{self.name}: {exc}') from exc

        if self.kind == "string_slice" and from_args and self._replaced:
            getattr(self.target, self.attribute).extend(value)
            return
        setattr(self.target, self.attribute, value)
        if from_args:
            self._replaced = True


class FlagSection:
    """A named group of flags within a flag set."""

    def __init__(self, name: str, owner: FlagSet) -> None:
        self.name = name
        self._owner = owner
        self.flags: list[_Flag] = []

    def add_flag(
        self,
        name: str,
        *,
        kind: str,
        dest: tuple[Any, str],
        default: Any = None,
        env_var: str | None = None,
        example: str | None = None,
        usage: str = "",
    ) -> None:
        """Declare a flag whose value is stored on ``dest``, an (object, attribute) pair."""
        if kind not in _CONVERTERS:
            raise ValueError(f"unknown flag kind {kind!r}")
        target, attribute = dest
        if default is None:
            default = _ZERO_VALUES[kind]
        flag = _Flag(
            name=name,
            kind=kind,
            target=target,
            attribute=attribute,
            default=default,
            env_var=env_var,
            example=example,
            usage=usage,
        )
        self._owner._register(flag)
        self.flags.append(flag)
        flag.reset()


class FlagSet:
    """A set of flags parsed from single- or double-dash arguments."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env = os.environ if env is None else env
        self.sections: list[FlagSection] = []
        self._flags: dict[str, _Flag] = {}
        self._hooks: list[Callable[[], Iterable[str] | None]] = []
        self.args: list[str] = []

    def _register(self, flag: _Flag) -> None:
        if flag.name in self._flags:
            raise ValueError(f"flag redefined: {flag.name}")
        self._flags[flag.name] = flag

    def new_section(self, name: str) -> FlagSection:
        section = FlagSection(name, self)
        self.sections.append(section)
        return section

    def after_parse(self, func: Callable[[], Iterable[str] | None]) -> Callable[[], Iterable[str] | None]:
        """Register a check run after parsing; it yields or returns error messages."""
        self._hooks.append(func)
        return func

    def parse(self, args: Iterable[str]) -> list[str]:
        """Parse ``args``, run the checks and return the arguments left over."""
        for flag in self._flags.values():
            flag.reset()
        for flag in self._flags.values():
            if flag.env_var and self._env.get(flag.env_var):
                flag.set(self._env[flag.env_var], from_args=False)

        remaining = iter(args)
        rest: list[str] = []
        for arg in remaining:
            if arg == "--":
                rest = list(remaining)
                break
            if not arg.startswith("-") or arg == "-":
                rest = [arg, *remaining]
                break

            body = arg[2:] if arg.startswith("--") else arg[1:]
            if not body or body[0] in "-=":
                raise FlagError(f"bad flag syntax: {arg}")
            name, has_value, value = body.partition("=")

            flag = self._flags.get(name)
            if flag is None:
                if name in ("h", "help"):
                    raise FlagError("flag: help requested")
                raise FlagError(f"flag provided but not defined: -{name}")

            if not has_value:
                if flag.kind == "bool":
                    value = "true"
                else:
                    next_value = next(remaining, None)
                    if next_value is None:
                        raise FlagError(f"flag needs an argument: -{name}")
                    value = next_value
            flag.set(value, from_args=True)

        self.args = rest

        errors: list[str] = []
        for hook in self._hooks:
            errors.extend(hook() or ())
        if errors:
            raise FlagError(errors)
        return rest


@dataclass
class CommonFlags:
    """Flags shared by commands that work on a Terraform directory."""

    directory: str = ""

    def register(self, flag_set: FlagSet) -> None:
        section = flag_set.new_section("COMMON OPTIONS")
        section.add_flag(
            "dir",
            kind="string",
            dest=(self, "directory"),
            example="./terraform",
            usage="The location of the terraform directory",
        )


@dataclass
class GitHubFlags:
    """Flags shared by commands that talk to GitHub."""

    github_token: str = ""
    github_owner: str = ""
    github_repo: str = ""
    github_app_id: str = ""
    github_app_installation_id: str = ""
    github_app_private_key_pem: str = ""

    def register(self, flag_set: FlagSet) -> None:
        section = flag_set.new_section("GITHUB OPTIONS")
        section.add_flag(
            "github-token",
            kind="string",
            dest=(self, "github_token"),
            env_var="GITHUB_TOKEN",
            usage=(
                "The GitHub access token to make GitHub API calls. "
                "This value is automatically set on GitHub Actions."
            ),
        )
        section.add_flag(
            "github-owner",
            kind="string",
            dest=(self, "github_owner"),
            example="organization-name",
            usage="The GitHub repository owner.",
        )
        section.add_flag(
            "github-repo",
            kind="string",
            dest=(self, "github_repo"),
            example="repository-name",
            usage="The GitHub repository name.",
        )
        section.add_flag(
            "github-app-id",
            kind="string",
            dest=(self, "github_app_id"),
            env_var="GITHUB_APP_ID",
            usage="The ID of GitHub App to use for requesting tokens to make GitHub API calls.",
        )
        section.add_flag(
            "github-app-installation-id",
            kind="string",
            dest=(self, "github_app_installation_id"),
            env_var="GITHUB_APP_INSTALLATION_ID",
            usage=(
                "The Installation ID of GitHub App to use for requesting tokens "
                "to make GitHub API calls."
            ),
        )
        section.add_flag(
            "github-app-private-key-pem",
            kind="string",
            dest=(self, "github_app_private_key_pem"),
            env_var="GITHUB_APP_PRIVATE_KEY_PEM",
            usage="The PEM formatted private key to use with the GitHub App.",
        )
        flag_set.after_parse(self._validate)

    def _validate(self) -> list[str]:
        errors = []
        if not self.github_token and not self.github_app_id:
            errors.append("one of github token or github app id are required")
        if self.github_token and self.github_app_id:
            errors.append("only one of github token or github app id are allowed")
        if self.github_app_id and not self.github_app_installation_id:
            errors.append("a github app installation id is required when using a github app id")
        if self.github_app_id and not self.github_app_private_key_pem:
            errors.append("a github app private key is required when using a github app id")
        return errors


@dataclass
class RetryFlags:
    """Flags controlling how failed calls are retried."""

    retry_max_attempts: int = 3
    retry_initial_delay: float = 2.0
    retry_max_delay: float = 60.0

    def register(self, flag_set: FlagSet) -> None:
        section = flag_set.new_section("RETRY OPTIONS")
        section.add_flag(
            "retry-max-attempts",
            kind="uint64",
            dest=(self, "retry_max_attempts"),
            default=3,
            example="1",
            usage="The maxinum number of attempts to retry any failures.",
        )
        section.add_flag(
            "retry-initial-delay",
            kind="duration",
            dest=(self, "retry_initial_delay"),
            default=parse_duration("2s"),
            example="10s",
            usage="The initial duration to wait before retrying any failures.",
        )
        section.add_flag(
            "retry-max-delay",
            kind="duration",
            dest=(self, "retry_max_delay"),
            default=parse_duration("1m"),
            example="5m",
            usage="The maximum duration to wait before retrying any failures.",
        )
"""Find IAM memberships matching a query and remove them, optionally only expired ones."""

from __future__ import annotations

import logging
import operator
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Protocol

from .command import CommandError
from .flags import parse_duration

logger = logging.getLogger(__name__)

_COMPILE = "failed to compile Expression (CEL):"
_EVALUATE = "failed to evaluate Expression (CEL):"

_REQUEST_FIELDS = frozenset(
    {
        "id",
        "method",
        "headers",
        "path",
        "host",
        "scheme",
        "query",
        "time",
        "size",
        "protocol",
        "reason",
        "auth",
    }
)
_ALLOWED_REQUEST_FIELDS = frozenset({"time"})


class ExpressionError(Exception):
    """Raised when a condition expression cannot be compiled or evaluated."""


class _EvaluationError(Exception):
    pass


class ResourceType(str, Enum):
    """Kinds of resources an IAM membership can be attached to."""

    ORGANIZATION = "Organization"
    FOLDER = "Folder"
    PROJECT = "Project"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AssetIAM:
    """One IAM membership found in the asset inventory."""

    resource_type: ResourceType | str
    resource_id: str
    member: str
    role: str = ""
    condition: str = ""


class _AssetInventoryClient(Protocol):
    def iam(self, scope: str, query: str) -> list[AssetIAM]: ...


class _IAMClient(Protocol):
    def remove_organization_iam(self, membership: AssetIAM) -> None: ...

    def remove_folder_iam(self, membership: AssetIAM) -> None: ...

    def remove_project_iam(self, membership: AssetIAM) -> None: ...


# --- condition expressions -------------------------------------------------


@dataclass(frozen=True)
class _Lexeme:
    kind: str
    text: str
    position: int


@dataclass(frozen=True)
class _Literal:
    value: Any


@dataclass(frozen=True)
class _Ident:
    name: str


@dataclass(frozen=True)
class _Select:
    operand: Any
    field: str


@dataclass(frozen=True)
class _Call:
    function: str
    args: tuple = ()
    target: Any = None


_LEXEME_PATTERN = re.compile(
    r"""
    (?P<number>\d+\.\d+(?:[eE][+-]?\d+)?|\d+[eE][+-]?\d+|\d+)
    |(?P<string>'(?:[^'\\\n]|\\.)*'|"(?:[^"\\\n]|\\.)*")
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>\|\||&&|==|!=|<=|>=|[<>!().,+\-*/%])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "\\": "\\", "'": "'", '"': '"'}


def _lex(text: str) -> list[_Lexeme]:
    lexemes = []
    pos = 0
    while True:
        while pos < len(text) and text[pos].isspace():
            pos += 1
        if pos >= len(text):
            return lexemes
        match = _LEXEME_PATTERN.match(text, pos)
        if match is None:
            raise ExpressionError(f"{_COMPILE} unexpected character {text[pos]!r} at position {pos}")
        kind = match.lastgroup
        lexemes.append(_Lexeme(kind, match.group(kind), pos))
        pos = match.end()


def _unescape(literal: str, position: int) -> str:
    body = literal[1:-1]
    parts = []
    chars = iter(body)
    for char in chars:
        if char != "\\":
            parts.append(char)
            continue
        escaped = next(chars, "")
        if escaped not in _ESCAPES:
            raise ExpressionError(f"{_COMPILE} invalid escape sequence at position {position}")
        parts.append(_ESCAPES[escaped])
    return "".join(parts)


class _Parser:
    def __init__(self, lexemes: list[_Lexeme]) -> None:
        self._lexemes = lexemes
        self._pos = 0

    def parse(self) -> Any:
        node = self._or()
        if self._peek() is not None:
            raise self._error("unexpected token")
        return node

    def _peek(self) -> _Lexeme | None:
        return self._lexemes[self._pos] if self._pos < len(self._lexemes) else None

    def _advance(self) -> _Lexeme:
        lexeme = self._peek()
        if lexeme is None:
            raise self._error("unexpected end of input")
        self._pos += 1
        return lexeme

    def _accept(self, *texts: str) -> str | None:
        lexeme = self._peek()
        if lexeme is not None and lexeme.kind == "op" and lexeme.text in texts:
            self._pos += 1
            return lexeme.text
        return None

    def _expect(self, text: str) -> None:
        if self._accept(text) is None:
            raise self._error(f"expected {text!r}")

    def _error(self, message: str) -> ExpressionError:
        lexeme = self._peek()
        where = f"at position {lexeme.position}" if lexeme else "at end of input"
        return ExpressionError(f"{_COMPILE} {message} {where}")

    def _binary(self, operand: Callable[[], Any], *ops: str) -> Any:
        node = operand()
        while (op := self._accept(*ops)) is not None:
            node = _Call(f"_{op}_", (node, operand()))
        return node

    def _or(self) -> Any:
        return self._binary(self._and, "||")

    def _and(self) -> Any:
        return self._binary(self._relation, "&&")

    def _relation(self) -> Any:
        return self._binary(self._additive, "==", "!=", "<", "<=", ">", ">=")

    def _additive(self) -> Any:
        return self._binary(self._multiplicative, "+", "-")

    def _multiplicative(self) -> Any:
        return self._binary(self._unary, "*", "/", "%")

    def _unary(self) -> Any:
        if self._accept("!"):
            return _Call("!_", (self._unary(),))
        if self._accept("-"):
            return _Call("-_", (self._unary(),))
        return self._member()

    def _member(self) -> Any:
        node = self._primary()
        while self._accept("."):
            lexeme = self._advance()
            if lexeme.kind != "ident":
                self._pos -= 1
                raise self._error("expected a field name")
            if self._accept("("):
                node = _Call(lexeme.text, self._arguments(), target=node)
            else:
                node = _Select(node, lexeme.text)
        return node

    def _arguments(self) -> tuple:
        if self._accept(")"):
            return ()
        args = [self._or()]
        while self._accept(","):
            args.append(self._or())
        self._expect(")")
        return tuple(args)

    def _primary(self) -> Any:
        lexeme = self._advance()
        if lexeme.kind == "number":
            if "." in lexeme.text or "e" in lexeme.text or "E" in lexeme.text:
                return _Literal(float(lexeme.text))
            return _Literal(int(lexeme.text))
        if lexeme.kind == "string":
            return _Literal(_unescape(lexeme.text, lexeme.position))
        if lexeme.kind == "ident":
            keywords = {"true": True, "false": False, "null": None}
            if lexeme.text in keywords:
                return _Literal(keywords[lexeme.text])
            if self._accept("("):
                return _Call(lexeme.text, self._arguments())
            return _Ident(lexeme.text)
        if lexeme.text == "(":
            node = self._or()
            self._expect(")")
            return node
        self._pos -= 1
        raise self._error(f"unexpected {lexeme.text!r}")


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, datetime):
        return "timestamp"
    if isinstance(value, timedelta):
        return "duration"
    if isinstance(value, dict):
        return "map"
    return type(value).__name__


def _no_overload(name: str, *values: Any) -> _EvaluationError:
    kinds = ", ".join(_kind(value) for value in values)
    return _EvaluationError(f"no such overload: {name}({kinds})")


_NUMERIC = frozenset({"int", "double"})
_ORDERABLE = frozenset({"bool", "int", "double", "string", "timestamp", "duration"})
_COMPARATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _comparable(left: Any, right: Any) -> bool:
    left_kind, right_kind = _kind(left), _kind(right)
    return left_kind == right_kind or (left_kind in _NUMERIC and right_kind in _NUMERIC)


def _equals(left: Any, right: Any) -> bool:
    return _comparable(left, right) and left == right


def _make_comparison(op: str) -> Callable[[Any, Any], bool]:
    compare = _COMPARATORS[op]

    def apply(left: Any, right: Any) -> bool:
        if not _comparable(left, right) or _kind(left) not in _ORDERABLE:
            raise _no_overload(op, left, right)
        return compare(left, right)

    return apply


def _add(left: Any, right: Any) -> Any:
    kinds = (_kind(left), _kind(right))
    if kinds in {
        ("int", "int"),
        ("double", "double"),
        ("string", "string"),
        ("timestamp", "duration"),
        ("duration", "timestamp"),
        ("duration", "duration"),
    }:
        return left + right
    raise _no_overload("+", left, right)


def _subtract(left: Any, right: Any) -> Any:
    kinds = (_kind(left), _kind(right))
    if kinds in {
        ("int", "int"),
        ("double", "double"),
        ("timestamp", "timestamp"),
        ("timestamp", "duration"),
        ("duration", "duration"),
    }:
        return left - right
    raise _no_overload("-", left, right)


def _multiply(left: Any, right: Any) -> Any:
    if _kind(left) in _NUMERIC and _kind(left) == _kind(right):
        return left * right
    raise _no_overload("*", left, right)


def _truncated_quotient(left: int, right: int) -> int:
    quotient = abs(left) // abs(right)
    return quotient if (left < 0) == (right < 0) else -quotient


def _divide(left: Any, right: Any) -> Any:
    if _kind(left) not in _NUMERIC or _kind(left) != _kind(right):
        raise _no_overload("/", left, right)
    if right == 0:
        raise _EvaluationError("division by zero")
    if _kind(left) == "int":
        return _truncated_quotient(left, right)
    return left / right


def _modulo(left: Any, right: Any) -> Any:
    if _kind(left) != "int" or _kind(right) != "int":
        raise _no_overload("%", left, right)
    if right == 0:
        raise _EvaluationError("modulus by zero")
    return left - right * _truncated_quotient(left, right)


def _negate(value: Any) -> Any:
    if _kind(value) in ("int", "double", "duration"):
        return -value
    raise _no_overload("-", value)


def _not(value: Any) -> bool:
    if _kind(value) != "bool":
        raise _no_overload("!", value)
    return not value


def _timestamp(value: Any) -> datetime:
    if _kind(value) == "timestamp":
        return value
    if _kind(value) != "string":
        raise _no_overload("timestamp", value)
    text = value[:-1] + "+00:00" if value[-1:] in ("Z", "z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise _EvaluationError(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        raise _EvaluationError(f"invalid timestamp {value!r}: missing time zone")
    return parsed


def _duration(value: Any) -> timedelta:
    if _kind(value) == "duration":
        return value
    if _kind(value) != "string":
        raise _no_overload("duration", value)
    try:
        return timedelta(seconds=parse_duration(value))
    except ValueError as exc:
        raise _EvaluationError(f"invalid duration {value!r}") from exc


def _size(value: Any) -> int:
    if _kind(value) in ("string", "map"):
        return len(value)
    raise _no_overload("size", value)


def _to_int(value: Any) -> int:
    kind = _kind(value)
    if kind == "int":
        return value
    if kind == "double":
        return int(value)
    if kind == "timestamp":
        return int(value.timestamp())
    if kind == "string":
        try:
            return int(value)
        except ValueError as exc:
            raise _EvaluationError(f"cannot convert {value!r} to int") from exc
    raise _no_overload("int", value)


def _to_double(value: Any) -> float:
    kind = _kind(value)
    if kind in _NUMERIC:
        return float(value)
    if kind == "string":
        try:
            return float(value)
        except ValueError as exc:
            raise _EvaluationError(f"cannot convert {value!r} to double") from exc
    raise _no_overload("double", value)


def _to_string(value: Any) -> str:
    kind = _kind(value)
    if kind == "bool":
        return "true" if value else "false"
    if kind in ("string", "int", "double"):
        return str(value)
    raise _no_overload("string", value)


def _string_method(name: str, test: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    def apply(target: Any, argument: Any) -> bool:
        if _kind(target) != "string" or _kind(argument) != "string":
            raise _no_overload(name, target, argument)
        return test(target, argument)

    return apply


_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "_==_": _equals,
    "_!=_": lambda left, right: not _equals(left, right),
    "_<_": _make_comparison("<"),
    "_<=_": _make_comparison("<="),
    "_>_": _make_comparison(">"),
    "_>=_": _make_comparison(">="),
    "_+_": _add,
    "_-_": _subtract,
    "_*_": _multiply,
    "_/_": _divide,
    "_%_": _modulo,
    "-_": _negate,
    "!_": _not,
    "timestamp": _timestamp,
    "duration": _duration,
    "size": _size,
    "int": _to_int,
    "double": _to_double,
    "string": _to_string,
}

_ARITY = {name: (1 if name.endswith("_") and not name.startswith("_") else 2) for name in _FUNCTIONS}
_ARITY.update({"_&&_": 2, "_||_": 2, "timestamp": 1, "duration": 1, "size": 1, "int": 1,
               "double": 1, "string": 1})

_METHODS: dict[str, Callable[[Any, Any], bool]] = {
    "startsWith": _string_method("startsWith", str.startswith),
    "endsWith": _string_method("endsWith", str.endswith),
    "contains": _string_method("contains", lambda target, part: part in target),
}


def _check(node: Any) -> None:
    if isinstance(node, _Literal):
        return
    if isinstance(node, _Ident):
        if node.name != "request":
            raise ExpressionError(f"{_COMPILE} undeclared reference to '{node.name}'")
        return
    if isinstance(node, _Select):
        _check(node.operand)
        if node.operand == _Ident("request") and node.field not in _REQUEST_FIELDS:
            raise ExpressionError(f"{_COMPILE} undefined field '{node.field}'")
        return
    if node.target is not None:
        _check(node.target)
        arity = 1 if node.function in _METHODS else None
    else:
        arity = _ARITY.get(node.function)
    if arity is None:
        raise ExpressionError(f"{_COMPILE} undeclared reference to '{node.function}'")
    if len(node.args) != arity:
        raise ExpressionError(f"{_COMPILE} found no matching overload for '{node.function}'")
    for argument in node.args:
        _check(argument)


def _require_bool(value: Any, name: str) -> bool:
    if _kind(value) != "bool":
        raise _no_overload(name, value)
    return value


def _evaluate(node: Any, env: Mapping[str, Any]) -> Any:
    if isinstance(node, _Literal):
        return node.value
    if isinstance(node, _Ident):
        return env[node.name]
    if isinstance(node, _Select):
        operand = _evaluate(node.operand, env)
        if not isinstance(operand, dict):
            raise _EvaluationError(f"type '{_kind(operand)}' does not support field selection")
        if node.field not in operand:
            raise _EvaluationError(f"no such key: {node.field}")
        return operand[node.field]

    name = node.function
    if name in ("_&&_", "_||_"):
        stop = name == "_||_"
        left = _require_bool(_evaluate(node.args[0], env), name)
        if left is stop:
            return stop
        return _require_bool(_evaluate(node.args[1], env), name)

    args = [_evaluate(argument, env) for argument in node.args]
    if node.target is not None:
        return _METHODS[name](_evaluate(node.target, env), *args)
    return _FUNCTIONS[name](*args)


def _request(now: datetime) -> dict[str, Any]:
    return {
        "id": "",
        "method": "",
        "headers": {},
        "path": "",
        "host": "",
        "scheme": "",
        "query": "",
        "time": now,
        "size": 0,
        "protocol": "",
        "reason": "",
        "auth": {},
    }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_condition_expression(expression: str, now: datetime | None = None) -> bool:
    """Evaluate an IAM condition against a request made at ``now`` (default: the current time).

    Only ``request.time`` may be compared at the top level of the expression.
    """
    tree = _Parser(_lex(expression)).parse()
    _check(tree)

    if isinstance(tree, _Call):
        for argument in tree.args:
            if isinstance(argument, _Select) and argument.field not in _ALLOWED_REQUEST_FIELDS:
                allowed = ", ".join(sorted(_ALLOWED_REQUEST_FIELDS))
                raise ExpressionError(
                    f"unsupported field '{argument.field}' in Condition Expression. "
                    f"Allowed Request fields: '{allowed}'"
                )

    if now is None:
        now = _utc_now()
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    try:
        value = _evaluate(tree, {"request": _request(now)})
    except _EvaluationError as exc:
        raise ExpressionError(f"{_EVALUATE} {exc}") from exc

    if _kind(value) != "bool":
        raise ExpressionError(
            f"failed to parse evaluation from Expression (CEL) with value: {value}"
        )
    return value


# --- cleanup ---------------------------------------------------------------


def filter_by_evaluation(iams: Iterable[AssetIAM], now: datetime | None = None) -> list[AssetIAM]:
    """Keep memberships whose condition evaluates to false; skip those that cannot be evaluated."""
    if now is None:
        now = _utc_now()
    results = []
    for membership in iams:
        try:
            passed = evaluate_condition_expression(membership.condition, now)
        except ExpressionError as exc:
            logger.warning(
                "failed to parse expression (CEL) for IAM membership %s: %s", membership, exc
            )
            continue
        if not passed:
            results.append(membership)
    return results


def _uri_no_role(membership: AssetIAM) -> str:
    return f"{membership.resource_type}/{membership.resource_id}/{membership.member}"


def group_by_uri(iams: Iterable[AssetIAM]) -> dict[str, list[AssetIAM]]:
    """Group memberships by resource type, resource id and member, ignoring the role."""
    groups: dict[str, list[AssetIAM]] = {}
    for membership in iams:
        groups.setdefault(_uri_no_role(membership), []).append(membership)
    return groups


def count_all(groups: Mapping[str, list[AssetIAM]]) -> int:
    """Count the memberships across all groups."""
    return sum(len(members) for members in groups.values())


@dataclass
class IAMCleaner:
    """Removes IAM memberships found by an asset inventory query."""

    asset_inventory_client: _AssetInventoryClient
    iam_client: _IAMClient
    max_concurrent_requests: int = 10
    clock: Callable[[], datetime] = field(default=_utc_now)

    def do(self, scope: str, iam_query: str, evaluate_condition: bool) -> None:
        """Remove every membership matching the query; raise CommandError on failure."""
        try:
            iams = self.asset_inventory_client.iam(scope, iam_query)
        except CommandError as exc:
            raise CommandError(f"failed to get iam: {exc}") from exc

        logger.debug("got %d IAM memberships (scope=%s query=%s)", len(iams), scope, iam_query)

        # One task per resource and member: concurrent removals for the same pair conflict.
        if evaluate_condition:
            groups = group_by_uri(filter_by_evaluation(iams, self.clock()))
        else:
            groups = group_by_uri(iams)

        logger.debug("cleaning up %d IAM memberships", count_all(groups))

        errors: list[str] = []
        workers = max(1, self.max_concurrent_requests)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._remove_all, members) for members in groups.values()]
            for future in futures:
                if future.cancelled():
                    continue
                try:
                    future.result()
                except CommandError as exc:
                    errors.append(str(exc))
                    for pending in futures:
                        pending.cancel()

        if errors:
            raise CommandError(
                "failed to execute IAM Removal tasks in parallel: " + "\n".join(errors)
            )

        logger.debug("successfully deleted IAM for %d members", len(groups))

    def _remove_all(self, memberships: list[AssetIAM]) -> None:
        for membership in memberships:
            kind = membership.resource_type
            if kind == ResourceType.ORGANIZATION:
                remove, label = self.iam_client.remove_organization_iam, "org"
            elif kind == ResourceType.FOLDER:
                remove, label = self.iam_client.remove_folder_iam, "folder"
            elif kind == ResourceType.PROJECT:
                remove, label = self.iam_client.remove_project_iam, "project"
            else:
                raise CommandError(
                    f"unable to remove membership for unsupported resource type {kind}"
                )
            try:
                remove(membership)
            except CommandError as exc:
                raise CommandError(f"failed to remove {label} IAM: {exc}") from exc
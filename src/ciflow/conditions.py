# conditions.py
"""
Step activation predicates.

A step's ``run_if`` is either a Python callable taking the ExecutionContext
or a small expression in the style of workflow ``if:`` fields::

    runner.os == 'linux'
    platform != 'windows' && env.CI == 'true'
    !(env.SKIP_DOCS == '1')

Names: ``platform`` / ``runner.os`` (job platform), ``job`` / ``job.name``,
``env.NAME`` (resolved environment, empty string when unset), ``true``,
``false``. String comparison is case-insensitive, so ``runner.os == 'Linux'``
and ``runner.os == 'linux'`` are the same test. ``${{ ... }}`` wrappers are
accepted and stripped.

Expressions are compiled once at load time; syntax errors and unknown names
raise ConfigError before any job starts.
"""
from __future__ import annotations

import re
from typing import Any, Callable, List, Optional, Tuple

from .errors import ConfigError
from .model import ExecutionContext, Predicate

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<op>\|\||&&|==|!=|!|\(|\))
      | '(?P<sq>(?:[^']|'')*)'
      | "(?P<dq>[^"]*)"
      | (?P<num>\d+(?:\.\d+)?)
      | (?P<name>[A-Za-z_][A-Za-z0-9_.\-]*)
    )""",
    re.VERBOSE,
)

Getter = Callable[[ExecutionContext], Any]


class Condition:
    """Compiled predicate. Call it with an ExecutionContext."""

    def __init__(self, source: str, fn: Callable[[ExecutionContext], bool]):
        self.source = source
        self._fn = fn

    def __call__(self, ctx: ExecutionContext) -> bool:
        return bool(self._fn(ctx))

    def __repr__(self) -> str:
        return f"Condition({self.source!r})"


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ConfigError(message=f"Invalid condition near {text[pos:]!r}", details={"condition": text})
        pos = m.end()
        if m.group("op") is not None:
            tokens.append(("op", m.group("op")))
        elif m.group("sq") is not None:
            tokens.append(("str", m.group("sq").replace("''", "'")))
        elif m.group("dq") is not None:
            tokens.append(("str", m.group("dq")))
        elif m.group("num") is not None:
            tokens.append(("str", m.group("num")))
        else:
            tokens.append(("name", m.group("name")))
    return tokens


def _resolve_name(name: str, source: str) -> Getter:
    lowered = name.lower()
    if lowered in ("platform", "runner.os"):
        return lambda ctx: ctx.platform
    if lowered in ("job", "job.name"):
        return lambda ctx: ctx.job
    if lowered == "true":
        return lambda ctx: True
    if lowered == "false":
        return lambda ctx: False
    if lowered.startswith("env.") and len(name) > 4:
        var = name[4:]
        return lambda ctx: ctx.env.get(var, "")
    raise ConfigError(message=f"Unknown name in condition: {name!r}", details={"condition": source})


def _equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return str(a).lower() == str(b).lower()
    return str(a).casefold() == str(b).casefold()


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.i = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ConfigError(message="Unexpected end of condition", details={"condition": self.source})
        self.i += 1
        return tok

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok == ("op", op):
            self.i += 1
            return True
        return False

    def parse(self) -> Getter:
        if not self.tokens:
            raise ConfigError(message="Empty condition", details={"condition": self.source})
        node = self._or()
        if self._peek() is not None:
            raise ConfigError(message=f"Unexpected token {self._peek()[1]!r}", details={"condition": self.source})
        return node

    def _or(self) -> Getter:
        left = self._and()
        while self._accept("||"):
            right = self._and()
            left = (lambda l, r: lambda ctx: bool(l(ctx)) or bool(r(ctx)))(left, right)
        return left

    def _and(self) -> Getter:
        left = self._unary()
        while self._accept("&&"):
            right = self._unary()
            left = (lambda l, r: lambda ctx: bool(l(ctx)) and bool(r(ctx)))(left, right)
        return left

    def _unary(self) -> Getter:
        if self._accept("!"):
            inner = self._unary()
            return lambda ctx: not inner(ctx)
        return self._comparison()

    def _comparison(self) -> Getter:
        left = self._primary()
        tok = self._peek()
        if tok in (("op", "=="), ("op", "!=")):
            self.i += 1
            right = self._primary()
            if tok[1] == "==":
                return lambda ctx: _equal(left(ctx), right(ctx))
            return lambda ctx: not _equal(left(ctx), right(ctx))
        return left

    def _primary(self) -> Getter:
        if self._accept("("):
            node = self._or()
            if not self._accept(")"):
                raise ConfigError(message="Missing ')'", details={"condition": self.source})
            return node
        kind, value = self._take()
        if kind == "str":
            return lambda ctx: value
        if kind == "name":
            return _resolve_name(value, self.source)
        raise ConfigError(message=f"Unexpected token {value!r}", details={"condition": self.source})


def _strip_expression(text: str) -> str:
    text = text.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    return text


def compile_condition(predicate: Predicate) -> Condition:
    if isinstance(predicate, Condition):
        return predicate
    if callable(predicate):
        name = getattr(predicate, "__name__", "callable")
        return Condition(f"<{name}>", predicate)
    if not isinstance(predicate, str):
        raise ConfigError(message=f"Condition must be a string or callable, got {type(predicate).__name__}")
    source = _strip_expression(predicate)
    return Condition(source, _Parser(source).parse())


def only_on(*platforms: str) -> Condition:
    """Predicate helper: run the step only on the given platforms."""
    wanted = {p.lower() for p in platforms}
    return Condition(f"platform in {sorted(wanted)}", lambda ctx: ctx.platform in wanted)

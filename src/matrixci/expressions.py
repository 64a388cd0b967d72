# expressions.py
#
# `${{ ... }}` substitution and `if:` condition evaluation.
#
# Grammar (no side effects, everything is evaluated eagerly):
#   expr    := and ('||' and)*
#   and     := unary ('&&' unary)*
#   unary   := '!' unary | compare
#   compare := primary (('==' | '!=') primary)?
#   primary := NUMBER | 'string' | true | false | null
#            | name '(' ')' | dotted.name | '(' expr ')'

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Mapping, Tuple

from .errors import ConfigurationError

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")

_EXPR = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_WHOLE_EXPR = re.compile(r"^\s*\$\{\{\s*(.*?)\s*\}\}\s*$", re.DOTALL)
_STATUS_CALL = re.compile(r"\b(?:%s)\s*\(" % "|".join(STATUS_FUNCTIONS))

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<num>\d+(?:\.\d+)?)
      | (?P<str>'(?:[^']|'')*')
      | (?P<op>==|!=|&&|\|\||!|\(|\))
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )""",
    re.VERBOSE,
)

_LITERALS = {"true": True, "false": False, "null": None}


class ExpressionError(ConfigurationError):
    """An expression could not be parsed or referenced something unknown."""


Contexts = Mapping[str, Mapping[str, Any]]


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise ExpressionError(f"unexpected character at {pos} in expression {text!r}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def lookup(path: str, contexts: Contexts) -> Any:
    head, _, rest = path.partition(".")
    if head not in contexts:
        raise ExpressionError(f"unknown context {head!r} in {path!r}")
    value: Any = contexts[head]
    if not rest:
        return value
    for part in rest.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif head == "matrix":
            raise ExpressionError(f"matrix has no key {part!r}")
        else:
            return None
    return value


def _equal(a: Any, b: Any) -> bool:
    if a is None or b is None or type(a) is type(b):
        return a == b
    numeric = (int, float)
    if isinstance(a, numeric) and isinstance(b, numeric) and not isinstance(a, bool) and not isinstance(b, bool):
        return a == b
    return to_text(a) == to_text(b)


class _Parser:
    def __init__(self, text: str, contexts: Contexts, functions: Mapping[str, Callable[[], Any]]):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.contexts = contexts
        self.functions = functions

    def _peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, value: str | None = None) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ExpressionError(f"unexpected end of expression {self.text!r}")
        if value is not None and tok[1] != value:
            raise ExpressionError(f"expected {value!r} but found {tok[1]!r} in {self.text!r}")
        self.pos += 1
        return tok

    def parse(self) -> Any:
        if not self.tokens:
            raise ExpressionError("empty expression")
        value = self._or()
        if self._peek() is not None:
            raise ExpressionError(f"unexpected {self._peek()[1]!r} in {self.text!r}")
        return value

    def _or(self) -> Any:
        value = self._and()
        while self._peek() == ("op", "||"):
            self._take()
            right = self._and()
            value = value or right
        return value

    def _and(self) -> Any:
        value = self._unary()
        while self._peek() == ("op", "&&"):
            self._take()
            right = self._unary()
            value = value and right
        return value

    def _unary(self) -> Any:
        if self._peek() == ("op", "!"):
            self._take()
            return not self._unary()
        return self._compare()

    def _compare(self) -> Any:
        left = self._primary()
        tok = self._peek()
        if tok in (("op", "=="), ("op", "!=")):
            self._take()
            right = self._primary()
            same = _equal(left, right)
            return same if tok[1] == "==" else not same
        return left

    def _primary(self) -> Any:
        kind, value = self._take()
        if kind == "num":
            return float(value) if "." in value else int(value)
        if kind == "str":
            return value[1:-1].replace("''", "'")
        if kind == "op" and value == "(":
            inner = self._or()
            self._take(")")
            return inner
        if kind == "name":
            if value in _LITERALS:
                return _LITERALS[value]
            if self._peek() == ("op", "("):
                self._take()
                self._take(")")
                fn = self.functions.get(value)
                if fn is None:
                    raise ExpressionError(f"unknown function {value}()")
                return fn()
            return lookup(value, self.contexts)
        raise ExpressionError(f"unexpected {value!r} in {self.text!r}")


def evaluate(text: str, contexts: Contexts, functions: Mapping[str, Callable[[], Any]] | None = None) -> Any:
    return _Parser(text, contexts, functions or {}).parse()


def substitute(text: str, contexts: Contexts) -> str:
    """Replace every `${{ expr }}` in `text` with its rendered value."""
    return _EXPR.sub(lambda m: to_text(evaluate(m.group(1), contexts)), text)


def substitute_value(value: Any, contexts: Contexts) -> Any:
    """Recursive `substitute` over strings nested in lists and mappings."""
    if isinstance(value, str):
        return substitute(value, contexts)
    if isinstance(value, list):
        return [substitute_value(v, contexts) for v in value]
    if isinstance(value, dict):
        return {k: substitute_value(v, contexts) for k, v in value.items()}
    return value


def evaluate_condition(
    text: str | None,
    contexts: Contexts,
    functions: Mapping[str, Callable[[], Any]],
) -> bool:
    """
    Evaluate an `if:` predicate.

    No condition means `success()`. A condition that calls none of the status
    functions is implicitly `success() && (<condition>)`.
    """
    if text is None or not str(text).strip():
        return bool(functions["success"]())
    text = str(text)
    m = _WHOLE_EXPR.match(text)
    if m:
        text = m.group(1)
    value = bool(evaluate(text, contexts, functions))
    if not _STATUS_CALL.search(text):
        return bool(functions["success"]()) and value
    return value


def status_functions(*, failed: bool, cancelled: bool) -> Dict[str, Callable[[], bool]]:
    return {
        "success": lambda: not failed and not cancelled,
        "failure": lambda: failed,
        "always": lambda: True,
        "cancelled": lambda: cancelled,
    }

"""Library for parsing and evaluating tag selector expressions.

A tag expression selects releases by the tags attached to them. The
following syntax is supported:

- `*` matches every release and can't be combined with other operators.
- `a` matches releases tagged with `a`.
- `!a` matches releases without the tag `a`.
- `a & b` matches releases tagged with both `a` and `b`.
- `a | b`, `a, b` and `a b` match releases tagged with `a` or `b`.
- Parentheses group sub-expressions e.g. `(a | b) & !c`.

`!` binds tighter than `&`, which binds tighter than `|`.

```python
from helm_releases import tags

expr = tags.parse("application & !experimental")
if expr.matches({"application", "frontend"}):
    print("Selected")
```
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
import logging
import re

from .exceptions import TagExpressionSyntaxError

__all__ = [
    "TagExpression",
    "Literal",
    "And",
    "Or",
    "Not",
    "MatchAll",
    "MATCH_ALL",
    "parse",
    "evaluate",
    "combine",
]

_LOGGER = logging.getLogger(__name__)

MATCH_ALL_TOKEN = "*"

# Tokens are single operator characters, grouping punctuation or literals.
_TOKEN_RE = re.compile(r"\s*(?:([&|,!()])|([\[\]{}])|([^\s&|,!()\[\]{}]+))")


class TagExpression(ABC):
    """A parsed tag selector expression."""

    @abstractmethod
    def matches(self, tags: frozenset[str]) -> bool:
        """Return true if the expression selects an object with these tags."""


@dataclass(frozen=True)
class Literal(TagExpression):
    """Matches when the tag is present."""

    tag: str

    def matches(self, tags: frozenset[str]) -> bool:
        return self.tag in tags

    def __str__(self) -> str:
        return self.tag


@dataclass(frozen=True)
class And(TagExpression):
    """Matches when both sub-expressions match."""

    left: TagExpression
    right: TagExpression

    def matches(self, tags: frozenset[str]) -> bool:
        return self.left.matches(tags) and self.right.matches(tags)

    def __str__(self) -> str:
        return f"({self.left} & {self.right})"


@dataclass(frozen=True)
class Or(TagExpression):
    """Matches when either sub-expression matches."""

    left: TagExpression
    right: TagExpression

    def matches(self, tags: frozenset[str]) -> bool:
        return self.left.matches(tags) or self.right.matches(tags)

    def __str__(self) -> str:
        return f"({self.left} | {self.right})"


@dataclass(frozen=True)
class Not(TagExpression):
    """Matches when the sub-expression does not match."""

    expr: TagExpression

    def matches(self, tags: frozenset[str]) -> bool:
        return not self.expr.matches(tags)

    def __str__(self) -> str:
        return f"!{self.expr}"


@dataclass(frozen=True)
class MatchAll(TagExpression):
    """Matches every set of tags."""

    def matches(self, tags: frozenset[str]) -> bool:
        return True

    def __str__(self) -> str:
        return MATCH_ALL_TOKEN


MATCH_ALL = MatchAll()


@dataclass(frozen=True)
class _Token:
    kind: str
    """One of `op`, `literal` or `invalid`."""

    value: str
    position: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        if text[pos:].isspace():
            break
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise TagExpressionSyntaxError(text, "unexpected input", pos)
        if match.group(1):
            tokens.append(_Token("op", match.group(1), match.start(1)))
        elif match.group(2):
            tokens.append(_Token("invalid", match.group(2), match.start(2)))
        else:
            tokens.append(_Token("literal", match.group(3), match.start(3)))
        pos = match.end()
    return tokens


class _Parser:
    """Recursive descent parser over the token stream."""

    def __init__(self, text: str, tokens: list[_Token]) -> None:
        self._text = text
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> _Token | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _error(self, message: str, token: _Token | None) -> TagExpressionSyntaxError:
        position = token.position if token else len(self._text)
        return TagExpressionSyntaxError(self._text, message, position)

    def parse(self) -> TagExpression:
        expr = self._parse_or()
        if (token := self._peek()) is not None:
            if token.value == ")":
                raise self._error("unbalanced ')'", token)
            raise self._error(f"unexpected '{token.value}'", token)
        return expr

    def _parse_or(self) -> TagExpression:
        expr = self._parse_and()
        while (token := self._peek()) is not None:
            if token.kind == "op" and token.value in ("|", ","):
                self._pos += 1
            elif token.kind in ("literal", "invalid") or token.value in ("(", "!"):
                # Juxtaposition of two terms is an implicit or
                pass
            else:
                break
            expr = Or(expr, self._parse_and())
        return expr

    def _parse_and(self) -> TagExpression:
        expr = self._parse_unary()
        while (token := self._peek()) is not None and token.value == "&":
            self._pos += 1
            expr = And(expr, self._parse_unary())
        return expr

    def _parse_unary(self) -> TagExpression:
        token = self._peek()
        if token is None:
            raise self._error("expected a tag", None)
        self._pos += 1
        if token.kind == "invalid":
            raise self._error(f"unrecognized operator '{token.value}'", token)
        if token.kind == "literal":
            if token.value == MATCH_ALL_TOKEN:
                raise self._error(
                    f"'{MATCH_ALL_TOKEN}' can't be combined with other operators",
                    token,
                )
            return Literal(token.value)
        if token.value == "!":
            return Not(self._parse_unary())
        if token.value == "(":
            expr = self._parse_or()
            closing = self._peek()
            if closing is None or closing.value != ")":
                raise self._error("unbalanced '('", token)
            self._pos += 1
            return expr
        raise self._error(f"expected a tag but got '{token.value}'", token)


def parse(text: str, source: str | None = None) -> TagExpression:
    """Parse a tag selector expression.

    The optional `source` describes where the expression was declared and is
    included in error messages. Raises a `TagExpressionSyntaxError` when the
    expression is malformed.
    """
    if text.strip() == MATCH_ALL_TOKEN:
        return MATCH_ALL
    try:
        tokens = _tokenize(text)
        if not tokens:
            raise TagExpressionSyntaxError(text, "empty expression")
        expr = _Parser(text, tokens).parse()
    except TagExpressionSyntaxError as err:
        if source is None:
            raise
        raise TagExpressionSyntaxError(
            text, err.reason, err.position, source
        ) from err
    _LOGGER.debug("Parsed tag expression '%s' as %s", text, expr)
    return expr


def evaluate(expr: TagExpression, tags: Iterable[str]) -> bool:
    """Evaluate the expression against a set of tags."""
    return expr.matches(frozenset(tags))


def combine(*exprs: TagExpression | None) -> TagExpression:
    """Combine expressions so that all of them must match."""
    result: TagExpression = MATCH_ALL
    for expr in exprs:
        if expr is None or isinstance(expr, MatchAll):
            continue
        result = expr if isinstance(result, MatchAll) else And(result, expr)
    return result

"""Tests for the tag expression library."""

import pytest

from helm_releases import tags
from helm_releases.exceptions import TagExpressionSyntaxError


@pytest.mark.parametrize(
    ("expression", "release_tags", "expected"),
    [
        ("*", set(), True),
        ("*", {"database"}, True),
        ("  *  ", {"database"}, True),
        ("database", {"database"}, True),
        ("database", {"application"}, False),
        ("database", set(), False),
        ("!database", {"application"}, True),
        ("!database", {"database"}, False),
        ("!database", set(), True),
        ("database & application", {"database", "application"}, True),
        ("database & application", {"database"}, False),
        ("database | application", {"application"}, True),
        ("database, application", {"application"}, True),
        ("database application", {"application"}, True),
        ("database application", {"frontend"}, False),
        ("(database | application) & !experimental", {"database"}, True),
        (
            "(database | application) & !experimental",
            {"database", "experimental"},
            False,
        ),
        ("!!database", {"database"}, True),
        ("a | b & c", {"a"}, True),
        ("a | b & c", {"b"}, False),
        ("a | b & c", {"b", "c"}, True),
        ("!a & b", {"b"}, True),
        ("!(a & b)", {"a", "b"}, False),
        ("infra-db_v2.1", {"infra-db_v2.1"}, True),
    ],
)
def test_evaluate(expression: str, release_tags: set[str], expected: bool) -> None:
    """Test evaluating tag expressions against sets of tags."""
    expr = tags.parse(expression)
    assert tags.evaluate(expr, release_tags) is expected


def test_match_all() -> None:
    """Test that `*` parses as the match-all expression."""
    assert tags.parse("*") is tags.MATCH_ALL
    assert str(tags.parse("*")) == "*"


def test_precedence() -> None:
    """Test that `!` binds tighter than `&`, which binds tighter than `|`."""
    assert tags.parse("a | b & !c") == tags.Or(
        tags.Literal("a"),
        tags.And(tags.Literal("b"), tags.Not(tags.Literal("c"))),
    )


def test_juxtaposition_is_or() -> None:
    """Test that terms separated by whitespace or commas are alternatives."""
    expected = tags.Or(tags.Or(tags.Literal("a"), tags.Literal("b")), tags.Literal("c"))
    assert tags.parse("a b c") == expected
    assert tags.parse("a, b, c") == expected
    assert tags.parse("a | b | c") == expected


@pytest.mark.parametrize(
    ("expression", "reason"),
    [
        ("", "empty expression"),
        ("   ", "empty expression"),
        ("(a | b", "unbalanced '('"),
        ("a | b)", "unbalanced ')'"),
        ("a &", "expected a tag"),
        ("!", "expected a tag"),
        ("a & | b", "expected a tag but got '|'"),
        ("[a]", "unrecognized operator '['"),
        ("a {b}", "unrecognized operator '{'"),
        ("* & a", "'*' can't be combined with other operators"),
        ("!*", "'*' can't be combined with other operators"),
    ],
)
def test_syntax_error(expression: str, reason: str) -> None:
    """Test that malformed expressions are rejected."""
    with pytest.raises(TagExpressionSyntaxError) as exc_info:
        tags.parse(expression)
    assert exc_info.value.reason == reason
    assert exc_info.value.expression == expression


def test_syntax_error_position() -> None:
    """Test that the position of the offending token is reported."""
    with pytest.raises(TagExpressionSyntaxError, match="at position 4") as exc_info:
        tags.parse("a & [b]")
    assert exc_info.value.position == 4


def test_syntax_error_source() -> None:
    """Test that the declaring object is included in the error."""
    with pytest.raises(
        TagExpressionSyntaxError, match="in release target prod"
    ) as exc_info:
        tags.parse("(a", "release target prod")
    assert exc_info.value.source == "release target prod"
    assert exc_info.value.reason == "unbalanced '('"


def test_combine() -> None:
    """Test combining the global selector with a target selector."""
    database = tags.parse("database")
    application = tags.parse("application")
    assert tags.combine() is tags.MATCH_ALL
    assert tags.combine(None, tags.MATCH_ALL) is tags.MATCH_ALL
    assert tags.combine(None, database) == database
    assert tags.combine(tags.MATCH_ALL, database) == database
    combined = tags.combine(database, application)
    assert combined == tags.And(database, application)
    assert tags.evaluate(combined, {"database", "application"})
    assert not tags.evaluate(combined, {"database"})

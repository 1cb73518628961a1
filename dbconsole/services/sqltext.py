"""Lexical helpers for SQL text.

The scanner understands enough PostgreSQL lexical structure to tell code
apart from string literals, quoted identifiers, comments and dollar-quoted
bodies. It does not parse SQL.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from dbconsole.core.exceptions import InputValidationError

CODE = "code"
STRING = "string"
IDENT = "ident"
COMMENT = "comment"
DOLLAR = "dollar"

_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z_0-9]*)?\$")
_WORD = re.compile(r"[A-Za-z_][A-Za-z_0-9]*")

SELECT_KEYWORDS = frozenset({"SELECT", "WITH", "VALUES", "TABLE"})
DML_KEYWORDS = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE"})
DDL_KEYWORDS = frozenset({"CREATE", "ALTER", "DROP", "TRUNCATE", "COMMENT", "GRANT", "REVOKE"})


class UnterminatedError(ValueError):
    """A literal, identifier, comment or dollar quote never closes."""


@dataclass(frozen=True)
class Segment:
    kind: str
    text: str


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


def _close_quoted(sql: str, i: int, quote: str, backslash_escapes: bool, what: str) -> int:
    """Return the index just past the quote that closes the one at ``i``."""
    n = len(sql)
    i += 1
    while i < n:
        ch = sql[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    raise UnterminatedError(f"unterminated {what}")


def _close_block_comment(sql: str, i: int) -> int:
    # PostgreSQL block comments nest.
    depth = 0
    n = len(sql)
    while i < n:
        if sql.startswith("/*", i):
            depth += 1
            i += 2
        elif sql.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    raise UnterminatedError("unterminated block comment")


def scan(sql: str) -> list[Segment]:
    """Split ``sql`` into code and non-code segments."""
    segments: list[Segment] = []
    n = len(sql)
    i = 0
    code_start = 0

    def flush(end: int) -> None:
        if end > code_start:
            segments.append(Segment(CODE, sql[code_start:end]))

    while i < n:
        ch = sql[i]
        if ch == "'":
            escapes = i > 0 and sql[i - 1] in "eE" and (i == 1 or not _is_ident_char(sql[i - 2]))
            end = _close_quoted(sql, i, "'", escapes, "string literal")
            kind = STRING
        elif ch == '"':
            end = _close_quoted(sql, i, '"', False, "quoted identifier")
            kind = IDENT
        elif sql.startswith("--", i):
            newline = sql.find("\n", i)
            end = n if newline == -1 else newline + 1
            kind = COMMENT
        elif sql.startswith("/*", i):
            end = _close_block_comment(sql, i)
            kind = COMMENT
        elif ch == "$" and not (i > 0 and _is_ident_char(sql[i - 1])):
            match = _DOLLAR_TAG.match(sql, i)
            if match is None:
                i += 1
                continue
            tag = match.group(0)
            close = sql.find(tag, match.end())
            if close == -1:
                raise UnterminatedError("unterminated dollar-quoted string")
            end = close + len(tag)
            kind = DOLLAR
        else:
            i += 1
            continue

        flush(i)
        segments.append(Segment(kind, sql[i:end]))
        i = end
        code_start = end

    flush(n)
    return segments


def _code_words(segments: Iterable[Segment]) -> list[str]:
    words: list[str] = []
    for segment in segments:
        if segment.kind == CODE:
            words.extend(word.upper() for word in _WORD.findall(segment.text))
    return words


def split_statements(sql: str) -> list[str]:
    """Split a script on top-level semicolons.

    Semicolons inside literals, quoted identifiers, comments and dollar
    quotes do not split. Statements that hold nothing but whitespace or
    comments are dropped.
    """
    try:
        segments = scan(sql)
    except UnterminatedError as exc:
        raise InputValidationError(str(exc).capitalize()) from exc

    statements: list[str] = []
    current: list[Segment] = []

    def finish() -> None:
        if any(s.kind != COMMENT and s.text.strip() for s in current):
            statements.append("".join(s.text for s in current).strip())
        current.clear()

    for segment in segments:
        if segment.kind != CODE:
            current.append(segment)
            continue
        pieces = segment.text.split(";")
        for index, piece in enumerate(pieces):
            if index > 0:
                finish()
            if piece:
                current.append(Segment(CODE, piece))
    finish()
    return statements


def validate_where_fragment(fragment: str) -> str:
    """Check a user-supplied WHERE body and return it stripped.

    Rejects statement separators, comments, dollar quotes, unterminated
    literals and unbalanced parentheses. Ordinary literals such as
    ``'O''Brien'`` are accepted.
    """
    text = fragment.strip()
    if not text:
        raise InputValidationError("Filter is empty")
    if "\x00" in text:
        raise InputValidationError("Filter contains a NUL character")
    try:
        segments = scan(text)
    except UnterminatedError as exc:
        raise InputValidationError(f"Filter has an {exc}") from exc

    depth = 0
    for segment in segments:
        if segment.kind == COMMENT:
            raise InputValidationError("Filter may not contain comments")
        if segment.kind == DOLLAR:
            raise InputValidationError("Filter may not contain dollar-quoted strings")
        if segment.kind != CODE:
            continue
        if ";" in segment.text:
            raise InputValidationError("Filter may not contain ';'")
        if "*/" in segment.text:
            raise InputValidationError("Filter may not contain comments")
        for ch in segment.text:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth < 0:
                    raise InputValidationError("Filter has unbalanced parentheses")
    if depth != 0:
        raise InputValidationError("Filter has unbalanced parentheses")
    return text


def classify_statement(sql: str) -> str:
    """Return ``select``, ``dml``, ``ddl`` or ``other`` from leading keywords."""
    try:
        words = _code_words(scan(sql))
    except UnterminatedError:
        return "other"
    if not words:
        return "other"
    first = words[0]
    if first == "WITH" and DML_KEYWORDS.intersection(words):
        return "dml"
    if first in SELECT_KEYWORDS:
        return "select"
    if first in DML_KEYWORDS:
        return "dml"
    if first in DDL_KEYWORDS:
        return "ddl"
    return "other"


def quote_ident(name: str) -> str:
    """Quote an identifier for PostgreSQL."""
    if not name or "\x00" in name:
        raise InputValidationError("Invalid identifier")
    return '"' + name.replace('"', '""') + '"'


def qualified_table(schema: str, table: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(table)}"


_NUMBERED_MARKER = re.compile(r"(?<![\w$])\$(\d+)")
_POSITIONAL_MARKER = re.compile(r"\?")
_MAIN_VERBS = frozenset({"SELECT", "VALUES", "TABLE"}) | DML_KEYWORDS
_ROW_SET_LEADERS = frozenset({"SELECT", "VALUES", "TABLE", "SHOW", "EXPLAIN"})


def bind_parameters(
    sql: str, parameters: Optional[Sequence[Any]] = None
) -> tuple[str, dict[str, Any]]:
    """Rewrite user SQL for a named-parameter ``text()`` construct.

    Colons outside literals are escaped so casts such as ``x::int`` reach
    the server untouched. When ``parameters`` are given, ``$1``-style
    markers become binds; without any ``$N`` marker, each ``?`` is bound in
    order instead. Without parameters every ``?`` stays an operator.
    """
    try:
        segments = scan(sql)
    except UnterminatedError as exc:
        raise InputValidationError(str(exc).capitalize()) from exc

    values = list(parameters or ())
    code = [segment.text for segment in segments if segment.kind == CODE]
    numbered = [int(number) for piece in code for number in _NUMBERED_MARKER.findall(piece)]
    positional = sum(piece.count("?") for piece in code)
    if values and numbered:
        if min(numbered) < 1 or max(numbered) > len(values):
            raise InputValidationError(
                "Parameter markers do not match the parameters given",
                details={"markers": sorted(set(numbered)), "parameters": len(values)},
            )
        pattern = _NUMBERED_MARKER
    elif values:
        if positional != len(values):
            raise InputValidationError(
                "Parameter markers do not match the parameters given",
                details={"markers": positional, "parameters": len(values)},
            )
        pattern = _POSITIONAL_MARKER
    else:
        pattern = None

    position = 0

    def bind(match: re.Match, text: str) -> str:
        nonlocal position
        if match.group(0) == "?":
            position += 1
            name = f"p{position}"
        else:
            name = f"p{match.group(1)}"
        before = text[match.start() - 1] if match.start() else ""
        after = text[match.end()] if match.end() < len(text) else ""
        lead = " " if _is_ident_char(before) else ""
        trail = " " if _is_ident_char(after) else ""
        return f"{lead}:{name}{trail}"

    pieces = []
    for segment in segments:
        if segment.kind != CODE:
            pieces.append(segment.text.replace(":", "\\:"))
            continue
        escaped = segment.text.replace(":", "\\:")
        if pattern is not None:
            escaped = pattern.sub(lambda match: bind(match, escaped), escaped)
        pieces.append(escaped)
    return "".join(pieces), {f"p{index}": value for index, value in enumerate(values, start=1)}


def _top_level_words(segments: Iterable[Segment]) -> list[str]:
    words: list[str] = []
    depth = 0
    for segment in segments:
        if segment.kind != CODE:
            continue
        for token in re.finditer(r"[()]|[A-Za-z_][A-Za-z_0-9]*", segment.text):
            value = token.group(0)
            if value == "(":
                depth += 1
            elif value == ")":
                depth = max(depth - 1, 0)
            elif depth == 0:
                words.append(value.upper())
    return words


def returns_row_set(sql: str) -> bool:
    """Whether a statement yields rows that may be read from a cursor.

    True for queries, ``SHOW``, ``EXPLAIN`` and data changes with a
    top-level ``RETURNING``. ``SELECT ... INTO`` creates a table instead.
    """
    try:
        words = _top_level_words(scan(sql))
    except UnterminatedError:
        return False
    if not words:
        return False
    if "RETURNING" in words:
        return True
    leader = words[0]
    if leader == "WITH":
        leader = next((word for word in words if word in _MAIN_VERBS), "")
    if leader not in _ROW_SET_LEADERS:
        return False
    return leader != "SELECT" or "INTO" not in words

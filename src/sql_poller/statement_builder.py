"""Statement construction for a poll cycle.

Two statement variants are supported and selected once from configuration:

* ``LiteralStatement``: query text with ``:name`` placeholders bound from the
  configured parameters plus the reserved ``sql_last_value``.
* ``PreparedStatement``: query text with positional ``?`` placeholders bound
  from a fixed list of values, one of which may be the ``":sql_last_value"``
  sentinel.

Placeholders are rewritten into the DB-API ``paramstyle`` of the loaded
driver, so the same query text works against psycopg2, sqlite3, pymysql, ...
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

import structlog

from sql_poller.domain.models import CursorValue
from sql_poller.exceptions import ConfigurationError

if TYPE_CHECKING:
    from sql_poller.config import PollConfiguration
    from sql_poller.infra.connection_manager import ConnectionHandle

logger = structlog.get_logger(__name__)

SQL_LAST_VALUE = "sql_last_value"
SQL_LAST_VALUE_SENTINEL = ":sql_last_value"

_IDENT_START = re.compile(r"[A-Za-z_]")
_IDENT = re.compile(r"[A-Za-z0-9_]*")
_PREPARED_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class LiteralStatement:
    """Query text with named parameters."""

    text: str
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class PreparedStatementState:
    """Per-engine prepared statement bookkeeping.

    ``prepared`` flips once, on the first cycle. ``generation`` records the
    physical connection the plan was registered on; prepared plans do not
    survive a reconnect, so a different generation triggers re-registration.
    """

    name: str
    placeholder_count: int
    prepared: bool = False
    generation: int | None = None
    compiled_sql: str | None = None


@dataclass(frozen=True)
class PreparedStatement:
    """Query text with positional ``?`` placeholders and fixed bind values."""

    text: str
    name: str
    bind_values: tuple[Any, ...]
    state: PreparedStatementState = field(compare=False, repr=False)


StatementVariant = Union[LiteralStatement, PreparedStatement]


@dataclass(frozen=True)
class BoundQuery:
    """SQL text and driver parameters ready for ``cursor.execute``."""

    sql: str
    params: Any = None
    pageable: bool = True


# --- scanning -----------------------------------------------------------------


def _scan(text: str) -> Iterator[tuple[str, str]]:
    """Split SQL text into ``text`` chunks and ``named``/``positional`` placeholders.

    String literals, quoted identifiers, comments and ``::`` casts are never
    treated as placeholders.
    """
    buf: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch in ("'", '"'):
            end = i + 1
            while end < n:
                if text[end] == ch:
                    if end + 1 < n and text[end + 1] == ch:
                        end += 2
                        continue
                    break
                end += 1
            buf.append(text[i : end + 1])
            i = end + 1
        elif text.startswith("--", i):
            end = text.find("\n", i)
            end = n if end == -1 else end
            buf.append(text[i:end])
            i = end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            buf.append(text[i:end])
            i = end
        elif ch == ":" and text.startswith("::", i):
            buf.append("::")
            i += 2
        elif ch == ":" and i + 1 < n and _IDENT_START.match(text[i + 1]):
            match = _IDENT.match(text, i + 2)
            end = match.end() if match else i + 2
            if buf:
                yield "text", "".join(buf)
                buf = []
            yield "named", text[i + 1 : end]
            i = end
        elif ch == "?":
            if buf:
                yield "text", "".join(buf)
                buf = []
            yield "positional", "?"
            i += 1
        else:
            buf.append(ch)
            i += 1
    if buf:
        yield "text", "".join(buf)


def named_placeholders(text: str) -> list[str]:
    """Return the distinct ``:name`` placeholders in order of first use."""
    names: list[str] = []
    for kind, value in _scan(text):
        if kind == "named" and value not in names:
            names.append(value)
    return names


def count_positional_placeholders(text: str) -> int:
    return sum(1 for kind, _ in _scan(text) if kind == "positional")


def _escape_percent(chunk: str, paramstyle: str) -> str:
    if paramstyle in ("format", "pyformat"):
        return chunk.replace("%", "%%")
    return chunk


def _placeholder(paramstyle: str, name: str, position: int) -> str:
    if paramstyle == "named":
        return f":{name}"
    if paramstyle == "pyformat":
        return f"%({name})s"
    if paramstyle == "format":
        return "%s"
    if paramstyle == "qmark":
        return "?"
    if paramstyle == "numeric":
        return f":{position}"
    raise ValueError(f"Unsupported paramstyle: {paramstyle}")


def compile_named(text: str, paramstyle: str, values: Mapping[str, Any]) -> tuple[str, Any]:
    """Rewrite ``:name`` placeholders for ``paramstyle`` and shape the parameters to match.

    A bare ``?`` (for example the PostgreSQL jsonb operator) is passed through
    for drivers whose placeholders look different, and rejected with
    ConfigurationError for ``qmark``/``numeric`` drivers, which would read it as
    an extra placeholder.
    """
    parts: list[str] = []
    ordered: list[Any] = []
    used: dict[str, Any] = {}
    for kind, value in _scan(text):
        if kind == "named":
            ordered.append(values[value])
            used[value] = values[value]
            parts.append(_placeholder(paramstyle, value, len(ordered)))
        elif kind == "positional" and paramstyle in ("qmark", "numeric"):
            raise ConfigurationError(
                f"Statement contains a bare '?', which the {paramstyle} driver would read as a placeholder; "
                "use :name parameters or prepared statements."
            )
        else:
            parts.append(_escape_percent(value, paramstyle))
    sql = "".join(parts)
    if paramstyle in ("named", "pyformat"):
        return sql, used
    return sql, ordered


def compile_positional(text: str, paramstyle: str) -> str:
    """Rewrite ``?`` placeholders for ``paramstyle`` as ``p0``, ``p1``, ..."""
    parts: list[str] = []
    position = 0
    for kind, value in _scan(text):
        if kind == "positional":
            parts.append(_placeholder(paramstyle, f"p{position}", position + 1))
            position += 1
        elif kind == "named":
            parts.append(_escape_percent(f":{value}", paramstyle))
        else:
            parts.append(_escape_percent(value, paramstyle))
    return "".join(parts)


def _compile_dollar(text: str) -> str:
    parts: list[str] = []
    position = 0
    for kind, value in _scan(text):
        if kind == "positional":
            position += 1
            parts.append(f"${position}")
        elif kind == "named":
            parts.append(f":{value}")
        else:
            parts.append(value)
    return "".join(parts)


# --- variant selection ----------------------------------------------------------


def build_statement_variant(config: PollConfiguration) -> StatementVariant:
    """Select and validate the statement variant for ``config``.

    Raises ConfigurationError for every mismatch, before any connection is made.
    """
    if not config.use_prepared_statements:
        supplied = set(config.parameters) | {SQL_LAST_VALUE}
        missing = [name for name in named_placeholders(config.statement) if name not in supplied]
        if missing:
            raise ConfigurationError(f"Statement references undefined parameters: {missing}")
        return LiteralStatement(text=config.statement, parameters=dict(config.parameters))

    if config.connection.paging_enabled:
        raise ConfigurationError("Prepared statements cannot be combined with paging (paging_enabled).")

    name = (config.prepared_statement_name or "").strip()
    if not name:
        raise ConfigurationError("prepared_statement_name must be set when use_prepared_statements is true.")
    if not _PREPARED_NAME.match(name):
        raise ConfigurationError(f"prepared_statement_name {name!r} is not a valid SQL identifier.")

    bind_values = tuple(config.prepared_statement_bind_values)
    placeholders = count_positional_placeholders(config.statement)
    if placeholders != len(bind_values):
        raise ConfigurationError(
            f"Statement has {placeholders} '?' placeholders but {len(bind_values)} "
            "prepared_statement_bind_values were given."
        )
    if sum(1 for v in bind_values if v == SQL_LAST_VALUE_SENTINEL) > 1:
        raise ConfigurationError(f"{SQL_LAST_VALUE_SENTINEL!r} may appear at most once in the bind values.")

    state = PreparedStatementState(name=name, placeholder_count=placeholders)
    return PreparedStatement(text=config.statement, name=name, bind_values=bind_values, state=state)


# --- binding --------------------------------------------------------------------


def _uses_server_prepare(handle: ConnectionHandle) -> bool:
    return handle.driver_name.startswith("psycopg")


def _prepare(statement: PreparedStatement, handle: ConnectionHandle) -> None:
    state = statement.state
    if _uses_server_prepare(handle):
        sql = f"PREPARE {statement.name} AS {_compile_dollar(statement.text)}"
        cursor = handle.connection.cursor()
        try:
            cursor.execute(sql)
        finally:
            cursor.close()
        if state.placeholder_count:
            args = ", ".join(["%s"] * state.placeholder_count)
            state.compiled_sql = f"EXECUTE {statement.name} ({args})"
        else:
            state.compiled_sql = f"EXECUTE {statement.name}"
    else:
        state.compiled_sql = compile_positional(statement.text, handle.paramstyle)

    if not state.prepared:
        state.prepared = True
        logger.debug("Prepared statement", statement_name=statement.name)
    else:
        logger.debug("Re-registered prepared statement on new connection", statement_name=statement.name)
    state.generation = handle.generation


def build_query(variant: StatementVariant, cursor_value: CursorValue, handle: ConnectionHandle) -> BoundQuery:
    """Bind the current cursor value (and any user parameters) into ``variant``."""
    last_value = cursor_value.as_parameter()

    if isinstance(variant, LiteralStatement):
        values = dict(variant.parameters)
        values[SQL_LAST_VALUE] = last_value
        sql, params = compile_named(variant.text, handle.paramstyle, values)
        return BoundQuery(sql=sql, params=params, pageable=True)

    if isinstance(variant, PreparedStatement):
        if variant.state.generation != handle.generation:
            _prepare(variant, handle)
        bound = [last_value if v == SQL_LAST_VALUE_SENTINEL else v for v in variant.bind_values]
        if _uses_server_prepare(handle) or handle.paramstyle in ("qmark", "format", "numeric"):
            params: Any = bound
        else:
            params = {f"p{i}": v for i, v in enumerate(bound)}
        assert variant.state.compiled_sql is not None
        return BoundQuery(sql=variant.state.compiled_sql, params=params, pageable=False)

    raise TypeError(f"unsupported statement variant: {variant!r}")


def _strip_terminator(sql: str) -> str:
    return sql.strip().rstrip(";").rstrip()


def paginate(query: BoundQuery, limit: int, offset: int) -> BoundQuery:
    """Wrap ``query`` so it returns one limit/offset page."""
    if not query.pageable:
        raise ValueError("prepared statements cannot be paged")
    sql = f"SELECT * FROM ({_strip_terminator(query.sql)}) AS t1 LIMIT {int(limit)} OFFSET {int(offset)}"
    return BoundQuery(sql=sql, params=query.params, pageable=True)


def count_query(query: BoundQuery) -> BoundQuery:
    """Wrap ``query`` so it returns its row count."""
    sql = f"SELECT count(*) AS count FROM ({_strip_terminator(query.sql)}) AS t1"
    return BoundQuery(sql=sql, params=query.params, pageable=False)

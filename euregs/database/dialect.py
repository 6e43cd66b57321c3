"""Translation from the common SQL dialect to SQLite, plus free-text helpers.

The common dialect is PostgreSQL-flavoured: ``$n`` placeholders, ``ILIKE``,
``expr::TYPE`` casts and ``SELECT DISTINCT ON (...)``. Rewrites run on a
masked copy of the statement so string literals and quoted identifiers are
never touched. Anything the translator cannot rewrite safely raises
``DialectUnsupported`` instead of producing a guess.
"""

import re
from typing import List, NamedTuple, Tuple

from euregs.errors import DialectUnsupported


class Translation(NamedTuple):
    sql: str
    placeholder_count: int
    distinct_on: Tuple[str, ...]


_QUOTED = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"")
_SENTINEL = re.compile(r"\x00(\d+)\x00")
_DOLLAR = re.compile(r"\$(\d+)")
_ILIKE = re.compile(r"\bILIKE\b", re.IGNORECASE)
_DISTINCT_ON = re.compile(r"\bSELECT\s+DISTINCT\s+ON\s*\(([^()]*)\)\s*", re.IGNORECASE)
_LEADING_DISTINCT_ON = re.compile(r"^\s*SELECT\s+DISTINCT\s+ON\s*\(([^()]*)\)\s*", re.IGNORECASE)
_CAST_TYPE = re.compile(
    r"\s*(DOUBLE\s+PRECISION|CHARACTER\s+VARYING|[A-Za-z][A-Za-z0-9]*)(\s*\(\s*\d+(?:\s*,\s*\d+)?\s*\))?",
    re.IGNORECASE,
)
_IDENT_CHARS = re.compile(r"[\w.]")
_WRITE_KEYWORDS = re.compile(
    r"\b(INSERT|UPDATE|DELETE|DROP|ALTER|CREATE|ATTACH|DETACH|PRAGMA|TRUNCATE|GRANT|REVOKE|VACUUM|COPY)\b",
    re.IGNORECASE,
)
_FIRST_KEYWORD = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)
_ROW_BOUND = re.compile(r"\b(LIMIT|OFFSET)\b", re.IGNORECASE)

SQLITE_TYPES = {
    "TEXT": "TEXT",
    "VARCHAR": "TEXT",
    "CHAR": "TEXT",
    "CHARACTER VARYING": "TEXT",
    "INTEGER": "INTEGER",
    "INT": "INTEGER",
    "INT4": "INTEGER",
    "INT8": "INTEGER",
    "BIGINT": "INTEGER",
    "SMALLINT": "INTEGER",
    "REAL": "REAL",
    "FLOAT": "REAL",
    "FLOAT8": "REAL",
    "DOUBLE PRECISION": "REAL",
    "NUMERIC": "NUMERIC",
    "DECIMAL": "NUMERIC",
}

STOPWORDS = frozenset(
    ["a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"]
)

_SEARCH_STRIP = re.compile(r"['\"(){}\[\]^~*:]")
_WORD = re.compile(r"\w+")


def mask_literals(sql: str) -> Tuple[str, List[str]]:
    """Replace quoted text with sentinels; returns the masked SQL and the originals."""
    literals: List[str] = []

    def _store(match):
        literals.append(match.group(0))
        return f"\x00{len(literals) - 1}\x00"

    if "\x00" in sql:
        raise DialectUnsupported("Statement contains a NUL character")
    masked = _QUOTED.sub(_store, sql)
    if "'" in masked or '"' in masked:
        raise DialectUnsupported("Statement contains an unterminated quoted string")
    return masked, literals


def unmask_literals(masked: str, literals: List[str]) -> str:
    return _SENTINEL.sub(lambda m: literals[int(m.group(1))], masked)


def validate_statement(sql: str) -> str:
    """Accept only a single read-only SELECT/WITH statement.

    Returns the statement without a trailing semicolon.
    """
    if not sql or not sql.strip():
        raise DialectUnsupported("Empty statement")
    masked, literals = mask_literals(sql)
    if "--" in masked or "/*" in masked:
        raise DialectUnsupported("Comments are not accepted in statements")
    body = masked.strip()
    if body.endswith(";"):
        body = body[:-1].rstrip()
    if ";" in body:
        raise DialectUnsupported("Only a single statement may be executed")
    if not _FIRST_KEYWORD.match(body):
        raise DialectUnsupported("Only SELECT statements are supported")
    found = _WRITE_KEYWORDS.search(body)
    if found:
        raise DialectUnsupported(f"Statement keyword {found.group(1).upper()} is not allowed")
    return unmask_literals(body, literals)


def _rewrite_placeholders(masked: str) -> Tuple[str, int]:
    if "?" in masked:
        raise DialectUnsupported("'?' placeholders cannot be mixed into the common dialect")
    expected = 1

    def _replace(match):
        nonlocal expected
        number = int(match.group(1))
        if number != expected:
            raise DialectUnsupported(
                f"Placeholder ${number} out of order; expected ${expected}. "
                "Placeholders must appear once each, in ascending order"
            )
        expected += 1
        return "?"

    rewritten = _DOLLAR.sub(_replace, masked)
    return rewritten, expected - 1


def _operand_start(text: str, end: int) -> int:
    """Find where the operand ending just before ``end`` begins."""
    i = end
    while i > 0 and text[i - 1].isspace():
        i -= 1
    if i == 0:
        raise DialectUnsupported("Cast without an operand")
    last = text[i - 1]
    if last == ")":
        depth = 0
        j = i - 1
        while j >= 0:
            if text[j] == ")":
                depth += 1
            elif text[j] == "(":
                depth -= 1
                if depth == 0:
                    break
            j -= 1
        if j < 0:
            raise DialectUnsupported("Unbalanced parentheses around cast operand")
        # Function call such as COUNT(*)::INTEGER
        while j > 0 and _IDENT_CHARS.match(text[j - 1]):
            j -= 1
        return j
    if last == "\x00":
        j = text.rfind("\x00", 0, i - 1)
        if j < 0:
            raise DialectUnsupported("Malformed literal before cast")
        return j
    if last == "?":
        return i - 1
    j = i
    while j > 0 and _IDENT_CHARS.match(text[j - 1]):
        j -= 1
    if j == i:
        raise DialectUnsupported(f"Unsupported cast operand near {text[max(0, i - 10):i]!r}")
    return j


def _rewrite_casts(masked: str) -> str:
    text = masked
    while True:
        pos = text.find("::")
        if pos < 0:
            return text
        start = _operand_start(text, pos)
        operand = text[start:pos].strip()
        match = _CAST_TYPE.match(text, pos + 2)
        if not match:
            raise DialectUnsupported("Cast without a target type")
        type_name = re.sub(r"\s+", " ", match.group(1)).upper()
        target = SQLITE_TYPES.get(type_name)
        if target is None:
            raise DialectUnsupported(f"Cast to {type_name} has no SQLite equivalent")
        after = match.end()
        if text[after:after + 2] == "[]":
            raise DialectUnsupported("Array casts have no SQLite equivalent")
        text = f"{text[:start]}CAST({operand} AS {target}){text[after:]}"


def _strip_distinct_on(masked: str) -> Tuple[str, Tuple[str, ...]]:
    matches = list(_DISTINCT_ON.finditer(masked))
    if not matches:
        return masked, ()
    leading = _LEADING_DISTINCT_ON.match(masked)
    if len(matches) > 1 or not leading:
        raise DialectUnsupported("DISTINCT ON is only supported on the outermost SELECT")
    columns = []
    for expr in leading.group(1).split(","):
        name = expr.strip()
        if not re.fullmatch(r"[A-Za-z_][\w]*(\.[A-Za-z_][\w]*)?", name):
            raise DialectUnsupported(f"DISTINCT ON expression {name!r} is not a plain column")
        columns.append(name.split(".")[-1])
    bound = _ROW_BOUND.search(masked)
    if bound:
        raise DialectUnsupported(
            f"DISTINCT ON with {bound.group(1).upper()} cannot be translated: "
            "the engine would bound rows before de-duplication"
        )
    return "SELECT " + masked[leading.end():], tuple(columns)


def translate_to_sqlite(sql: str) -> Translation:
    """Rewrite a common-dialect statement for SQLite.

    Rewrites run in a fixed order: placeholders, ILIKE, casts, then
    DISTINCT ON. The columns dropped from DISTINCT ON are reported so the
    caller can de-duplicate rows itself.
    """
    masked, literals = mask_literals(sql)
    masked, count = _rewrite_placeholders(masked)
    masked = _ILIKE.sub("LIKE", masked)
    masked = _rewrite_casts(masked)
    masked, distinct_on = _strip_distinct_on(masked)
    return Translation(unmask_literals(masked, literals), count, distinct_on)


def sanitize_query(query: str) -> str:
    """Strip characters with meaning in FTS5 or tsquery syntax."""
    if not query:
        return ""
    text = query.replace("-", " ")
    text = _SEARCH_STRIP.sub("", text)
    return " ".join(text.split())


def query_terms(query: str) -> List[str]:
    """Search terms from free text; short words and stopwords are dropped."""
    words = [w.lower() for w in _WORD.findall(sanitize_query(query)) if len(w) > 2]
    terms = [w for w in words if w not in STOPWORDS]
    return terms or words


def fts5_match_expression(terms: List[str]) -> str:
    """Build an FTS5 MATCH expression; empty when there is nothing to match."""
    if not terms:
        return ""
    if len(terms) <= 3:
        return " ".join(f'"{t}"' for t in terms)
    return " OR ".join(f'"{t}"*' for t in terms)


def tsquery_expression(terms: List[str]) -> str:
    """Build a to_tsquery() expression mirroring the FTS5 one."""
    if not terms:
        return ""
    if len(terms) <= 3:
        return " & ".join(terms)
    return " | ".join(f"{t}:*" for t in terms)

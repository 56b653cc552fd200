"""
Safety pass for generated structured-store statements.

Destructive statements are always rejected.  Everything else passes with a
row ceiling enforced; the complexity score and risk level are reported for
logging only and never block execution.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

DESTRUCTIVE_KEYWORDS = (
    "alter",
    "attach",
    "create",
    "delete",
    "detach",
    "drop",
    "exec",
    "execute",
    "grant",
    "insert",
    "merge",
    "rename",
    "revoke",
    "truncate",
    "update",
)

_DESTRUCTIVE = re.compile(r"\b(" + "|".join(DESTRUCTIVE_KEYWORDS) + r")\b", re.I)
_READ_PREFIX = re.compile(r"^\s*(select|with)\b", re.I)
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_TRAILING_LIMIT = re.compile(r"\blimit\s+(\d+)(\s+offset\s+\d+)?\s*$", re.I)
# MySQL form: LIMIT offset, count
_TRAILING_OFFSET_LIMIT = re.compile(r"\blimit\s+(\d+)\s*,\s*(\d+)\s*$", re.I)
_SELECT_INTO = re.compile(r"\binto\b", re.I)

_INJECTION_PATTERNS = [
    re.compile(r"'\s*or\s+'?\w+'?\s*=\s*'?\w+", re.I),
    re.compile(r"\bunion\b\s+(all\s+)?select\b", re.I),
    re.compile(r"--"),
    re.compile(r"/\*.*?\*/", re.S),
    re.compile(r"\b(xp_|sp_)\w+", re.I),
    re.compile(r"\binformation_schema\b|\bsqlite_master\b|\bpg_catalog\b", re.I),
]


class UnsafeStatementError(ValueError):
    pass


@dataclass(frozen=True)
class StatementReport:
    statement: str
    complexity_score: float
    risk_level: str  # low | medium | high
    warnings: tuple[str, ...] = ()
    limit_applied: bool = False


def complexity_score(statement: str) -> float:
    low = statement.lower()
    score = (
        len(re.findall(r"\bjoin\b", low)) * 0.2
        + len(re.findall(r"\(\s*select\b", low)) * 0.3
        + len(re.findall(r"\bwhere\b", low)) * 0.1
        + len(re.findall(r"\bgroup\s+by\b", low)) * 0.2
        + len(re.findall(r"\border\s+by\b", low)) * 0.1
    )
    return round(min(score, 1.0), 4)


def _has_limit(statement: str) -> bool:
    return bool(_TRAILING_LIMIT.search(statement) or _TRAILING_OFFSET_LIMIT.search(statement))


def _enforce_limit(statement: str, row_limit: int) -> tuple[str, bool]:
    offset_form = _TRAILING_OFFSET_LIMIT.search(statement)
    if offset_form is not None:
        if int(offset_form.group(2)) > row_limit:
            clamped = f"LIMIT {offset_form.group(1)}, {row_limit}"
            return statement[: offset_form.start()] + clamped, True
        return statement, False

    match = _TRAILING_LIMIT.search(statement)
    if match is None:
        return f"{statement} LIMIT {row_limit}", True
    if int(match.group(1)) > row_limit:
        clamped = f"LIMIT {row_limit}{match.group(2) or ''}"
        return statement[: match.start()] + clamped, True
    return statement, False


def inspect_statement(statement: str, row_limit: int) -> StatementReport:
    """
    Vet *statement* and return it ready to run.

    Raises
    ------
    UnsafeStatementError
        For anything other than a single read-only query.
    """
    cleaned = statement.strip().rstrip(";").strip()
    if not cleaned:
        raise UnsafeStatementError("Empty statement")

    without_literals = _STRING_LITERAL.sub("''", cleaned)
    keyword = _DESTRUCTIVE.search(without_literals)
    if keyword:
        raise UnsafeStatementError(f"Statement contains destructive keyword {keyword.group(1).upper()!r}")
    if ";" in without_literals:
        raise UnsafeStatementError("Multiple statements are not allowed")
    if not _READ_PREFIX.match(without_literals):
        raise UnsafeStatementError("Only SELECT queries may be executed")
    if _SELECT_INTO.search(without_literals):
        raise UnsafeStatementError("SELECT ... INTO writes a table and is not allowed")

    warnings: list[str] = []
    injection = any(pattern.search(cleaned) for pattern in _INJECTION_PATTERNS)
    if injection:
        warnings.append("Statement may contain injection patterns")

    if not _has_limit(cleaned):
        warnings.append(f"Statement had no LIMIT clause; capped at {row_limit} rows")
    vetted, limit_applied = _enforce_limit(cleaned, row_limit)

    score = complexity_score(vetted)
    if score > 0.7:
        warnings.append("Statement complexity is high; it may be slow")

    if injection and score > 0.7:
        risk = "high"
    elif injection or score > 0.7:
        risk = "medium"
    else:
        risk = "low"

    return StatementReport(
        statement=vetted,
        complexity_score=score,
        risk_level=risk,
        warnings=tuple(warnings),
        limit_applied=limit_applied,
    )

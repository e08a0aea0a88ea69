"""
Tabletalk Backend - Profiling Module
Numeric parsing, column resolution, engagement enrichment, dataset summary and slim projection
"""

import difflib
import math
import re
from collections import Counter
from typing import Any, Optional

import pandas as pd


class ColumnKind:
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"


ENGAGEMENT_COLUMN = "engagement"

# A column is numeric when at least this share of its non-empty values parse.
NUMERIC_RATIO_THRESHOLD = 0.8
SUMMARY_TOP_VALUES = 5

# Pattern tables are tried in order; the first table entry that matches any header wins.
FAVORITE_COLUMN_PATTERNS = [
    re.compile(r"favorite.?count", re.IGNORECASE),
    re.compile(r"^likes?$", re.IGNORECASE),
]
VIEW_COLUMN_PATTERNS = [
    re.compile(r"view.?count", re.IGNORECASE),
    re.compile(r"^views?$", re.IGNORECASE),
]

SLIM_COLUMN_PATTERNS = [
    re.compile(r"^text$", re.IGNORECASE),
    re.compile(r"^language$", re.IGNORECASE),
    re.compile(r"^type$", re.IGNORECASE),
    re.compile(r"^view.?count$", re.IGNORECASE),
    re.compile(r"^reply.?count$", re.IGNORECASE),
    re.compile(r"^retweet.?count$", re.IGNORECASE),
    re.compile(r"^quote.?count$", re.IGNORECASE),
    re.compile(r"^favorite.?count$", re.IGNORECASE),
    re.compile(r"^(created.?at|timestamp|date)$", re.IGNORECASE),
    re.compile(r"^engagement$", re.IGNORECASE),
]

_LEADING_NUMBER = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def parse_number(value: Any) -> Optional[float]:
    """Permissive float parsing: leading numeric prefix of text, finite numbers as-is."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    match = _LEADING_NUMBER.match(str(value).strip())
    if not match:
        return None
    number = float(match.group(0))
    return number if math.isfinite(number) else None


def numeric_values(df: pd.DataFrame, col: str) -> list[float]:
    """Parseable numeric values of a column; unparseable cells are skipped."""
    if col not in df.columns:
        return []
    return [n for n in (parse_number(v) for v in df[col].tolist()) if n is not None]


def is_empty_cell(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value == ""


def normalize_column_name(name: str) -> str:
    return re.sub(r"[\s_-]+", "", str(name).lower())


def resolve_column(headers: list[str], name: Optional[str]) -> Optional[str]:
    """Map a loosely-specified column name onto an actual header, or None."""
    if not headers or not name:
        return None
    if name in headers:
        return name
    target = normalize_column_name(name)
    return next((h for h in headers if normalize_column_name(h) == target), None)


def column_not_found(name: Optional[str], headers: list[str], label: str = "Column") -> dict[str, str]:
    """Error mapping that enumerates available headers so the caller can retry."""
    msg = f"{label} \"{name}\" not found."
    suggestions = difflib.get_close_matches(str(name or ""), headers, n=3, cutoff=0.4)
    if suggestions:
        msg += f" Did you mean: {', '.join(suggestions)}?"
    msg += f" Available columns: {', '.join(headers)}"
    return {"error": msg}


def find_header(headers: list[str], patterns: list[re.Pattern]) -> Optional[str]:
    for pattern in patterns:
        match = next((h for h in headers if pattern.search(h)), None)
        if match:
            return match
    return None


def enrich(
    df: pd.DataFrame,
    headers: list[str],
    favorite_patterns: list[re.Pattern] = FAVORITE_COLUMN_PATTERNS,
    view_patterns: list[re.Pattern] = VIEW_COLUMN_PATTERNS,
) -> tuple[pd.DataFrame, list[str]]:
    """Append an engagement ratio (favorites / views) when both columns can be detected."""
    if df.empty or ENGAGEMENT_COLUMN in headers:
        return df, headers

    fav_col = find_header(headers, favorite_patterns)
    view_col = find_header(headers, view_patterns)
    if not fav_col or not view_col:
        return df, headers

    def ratio(row: pd.Series) -> Optional[float]:
        fav = parse_number(row[fav_col])
        views = parse_number(row[view_col])
        if fav is None or views is None or views <= 0:
            return None
        return round(fav / views, 6)

    enriched = df.copy()
    enriched[ENGAGEMENT_COLUMN] = pd.Series(
        [ratio(row) for _, row in df.iterrows()], index=df.index, dtype=object
    )
    return enriched, headers + [ENGAGEMENT_COLUMN]


def classify_column(values: list[Any]) -> tuple[str, list[float]]:
    """Classify non-empty values as numeric (>= 80% parseable) or categorical."""
    parsed = [n for n in (parse_number(v) for v in values) if n is not None]
    ratio = len(parsed) / (len(values) or 1)
    if parsed and ratio >= NUMERIC_RATIO_THRESHOLD:
        return ColumnKind.NUMERIC, parsed
    return ColumnKind.CATEGORICAL, parsed


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def summarize(df: pd.DataFrame, headers: list[str]) -> str:
    """Deterministic per-column digest used to ground the model's context."""
    if df.empty or not headers:
        return ""

    lines = [f"**Dataset: {len(df)} rows × {len(headers)} columns**\n"]
    numeric_lines = []
    categorical_lines = []

    for h in headers:
        values = [v for v in df[h].tolist() if not is_empty_cell(v)] if h in df.columns else []
        kind, parsed = classify_column(values)
        if kind == ColumnKind.NUMERIC:
            mean = sum(parsed) / len(parsed)
            numeric_lines.append(
                f"  • \"{h}\": mean={_format_number(round(mean, 2))}, min={_format_number(min(parsed))}, "
                f"max={_format_number(max(parsed))}, n={len(parsed)}"
            )
        else:
            counts = Counter(str(v) for v in values)
            top = ", ".join(f"{v} ({n})" for v, n in counts.most_common(SUMMARY_TOP_VALUES))
            categorical_lines.append(f"  • \"{h}\": {len(counts)} unique values, top: {top}")

    if numeric_lines:
        lines.append("**Numeric columns** (exact names, use these verbatim in tool calls):")
        lines.extend(numeric_lines)
    if categorical_lines:
        lines.append("\n**Categorical columns** (exact names, use these verbatim in tool calls):")
        lines.extend(categorical_lines)

    return "\n".join(lines)


def escape_csv_cell(value: Any) -> str:
    text = "" if is_empty_cell(value) else str(value)
    if "," in text or '"' in text or "\n" in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def slim_project(
    df: pd.DataFrame,
    headers: list[str],
    patterns: list[re.Pattern] = SLIM_COLUMN_PATTERNS,
) -> str:
    """CSV text holding only the analytically relevant columns, in header order."""
    if df.empty or not headers:
        return ""
    slim_headers = [h for h in headers if any(p.search(h) for p in patterns)]
    if not slim_headers:
        return ""

    lines = [",".join(slim_headers)]
    for _, row in df.iterrows():
        lines.append(",".join(escape_csv_cell(row.get(h)) for h in slim_headers))
    return "\n".join(lines)

"""
Tabletalk Backend - Ingestion Module
Best-effort parsing of delimited text and JSON collections into a uniform frame
"""

import csv
import io
import json
import warnings
from typing import Any, Optional

import pandas as pd

JSON_COLLECTION_KEYS = ("videos", "items")


def empty_dataset() -> tuple[list[str], pd.DataFrame]:
    return [], pd.DataFrame()


def truncate_source(text: str, limit: int) -> tuple[str, bool]:
    """Cap raw source text at `limit` characters; report whether anything was dropped."""
    if len(text) > limit:
        return text[:limit], True
    return text, False


def split_line(line: str) -> list[str]:
    """Split one line on commas outside quotes; a quote toggles the quoted state, `""` inside quotes is literal."""
    cells: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            if in_quotes and line[i + 1:i + 2] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            cells.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    cells.append("".join(current).strip())
    return cells


def parse_lines_loosely(lines: list[str]) -> tuple[list[str], pd.DataFrame]:
    """Line-at-a-time parse used when the strict parser gives up, e.g. on an unbalanced quote."""
    headers = split_line(lines[0])
    rows = []
    for line in lines[1:]:
        cells = split_line(line)[:len(headers)]
        rows.append(cells + [""] * (len(headers) - len(cells)))
    if not rows:
        return empty_dataset()
    return headers, pd.DataFrame(rows, columns=headers, dtype=object)


def parse_csv_text(text: str) -> tuple[list[str], pd.DataFrame]:
    """
    Parse delimited text into (headers, frame) with every cell kept as trimmed text.
    Quoted fields may hold commas, doubled quotes and embedded newlines.
    An unbalanced quote drops to a line-by-line parse so the remaining rows survive.
    Anything that does not yield a header plus at least one row is an empty dataset.
    """
    if not text:
        return empty_dataset()

    lines = [line for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n") if line.strip()]
    if len(lines) < 2:
        return empty_dataset()

    try:
        with warnings.catch_warnings():
            # Surplus cells on a row are dropped by the parser with a ParserWarning.
            warnings.simplefilter("ignore", pd.errors.ParserWarning)
            df = pd.read_csv(
                io.StringIO("\n".join(lines)),
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                skipinitialspace=True,
                index_col=False,
                engine="python",
                on_bad_lines=lambda bad_line: bad_line,
            )
    except pd.errors.EmptyDataError as e:
        print(f"CSV parsing failed: {e}")
        return empty_dataset()
    except (pd.errors.ParserError, csv.Error) as e:
        print(f"Strict CSV parse failed ({e}), falling back to line-by-line parsing")
        df = parse_lines_loosely(lines)[1]

    if df.empty or len(df.columns) == 0:
        return empty_dataset()

    df.columns = [str(c).strip() for c in df.columns]
    df = df.fillna("")
    for col in df.columns:
        df[col] = df[col].astype(str).str.strip()
    return df.columns.tolist(), df.reset_index(drop=True)


def load_json_rows(payload: Any) -> Optional[tuple[list[str], pd.DataFrame]]:
    """Accept a root array or an object exposing a `videos` / `items` array."""
    items: list[Any] = []
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        for key in JSON_COLLECTION_KEYS:
            if isinstance(payload.get(key), list):
                items = payload[key]
                break

    if not items or not isinstance(items[0], dict):
        return None

    headers = [str(k) for k in items[0].keys()]
    records = [item for item in items if isinstance(item, dict)]
    df = pd.DataFrame(records, columns=headers).astype(object)
    df = df.where(pd.notna(df), None)
    return headers, df


def parse_json_text(text: str) -> Optional[tuple[list[str], pd.DataFrame]]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        print(f"JSON parsing failed: {e}")
        return None
    return load_json_rows(payload)


def detect_source_kind(filename: Optional[str], text: str) -> Optional[str]:
    """Return 'csv' or 'json' from the file extension, sniffing the content when unknown."""
    name = (filename or "").lower()
    if name.endswith(".csv"):
        return "csv"
    if name.endswith(".json"):
        return "json"
    head = text.lstrip()[:1]
    if head in ("[", "{"):
        return "json"
    if head:
        return "csv"
    return None

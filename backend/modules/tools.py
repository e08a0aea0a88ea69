"""
Tabletalk Backend - Analytic Tools Module
Fixed registry of deterministic operations the language model may call against the active rows
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import numpy as np
import pandas as pd

from .image_generation import decode_anchor_image, describe_image_error
from .profiling import (
    ENGAGEMENT_COLUMN,
    FAVORITE_COLUMN_PATTERNS,
    VIEW_COLUMN_PATTERNS,
    column_not_found,
    find_header,
    is_empty_cell,
    numeric_values,
    parse_number,
    resolve_column,
)

WATCH_URL_TEMPLATE = "https://www.youtube.com/watch?v={}"
TEXT_PREVIEW_CHARS = 150
DEFAULT_TOP_N = 10
STAT_DIGITS = 6

COL_NOTE = (
    "Use the exact column name as it appears in the [Data columns: ...] / [CSV File: ...] header at the top "
    "of the message; copy it character-for-character, preserving spaces and capitalisation."
)

TEXT_COLUMN_PATTERNS = [
    re.compile(r"^text$", re.IGNORECASE),
    re.compile(r"text|content|tweet|body", re.IGNORECASE),
]
TITLE_COLUMN_PATTERNS = [
    re.compile(r"^title$", re.IGNORECASE),
    re.compile(r"title|name|videoTitle|text", re.IGNORECASE),
]
URL_COLUMN_PATTERNS = [
    re.compile(r"^videoUrl$", re.IGNORECASE),
    re.compile(r"videoUrl|video_url|url", re.IGNORECASE),
]
ID_COLUMN_PATTERNS = [
    re.compile(r"^videoId$", re.IGNORECASE),
    re.compile(r"videoId|video_id|id", re.IGNORECASE),
]
THUMBNAIL_COLUMN_PATTERNS = [re.compile(r"thumbnail", re.IGNORECASE)]


class ChartType:
    ENGAGEMENT = "engagement"
    METRIC_VS_TIME = "metric_vs_time"
    GENERATED_IMAGE = "generated_image"


@dataclass
class ToolContext:
    """Read-only view of the active dataset plus per-turn attachments."""
    df: pd.DataFrame
    images: list[dict[str, Any]] = field(default_factory=list)
    image_generator: Optional[Callable[..., dict[str, str]]] = None

    @property
    def headers(self) -> list[str]:
        return [str(c) for c in self.df.columns]


# ============================================================================
# Tool declarations (sent to the model so it knows what functions exist)
# ============================================================================

def _function(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_DECLARATIONS = [
    _function(
        "compute_column_stats",
        "Compute descriptive statistics (mean, median, std, min, max, count) for a numeric column. " + COL_NOTE,
        {
            "column": {
                "type": "string",
                "description": 'Exact column name. Example: if the header says "Favorite Count" pass '
                               '"Favorite Count", not "favorite_count".',
            },
        },
        ["column"],
    ),
    _function(
        "get_value_counts",
        "Count occurrences of each unique value in a column (for categorical data). " + COL_NOTE,
        {
            "column": {"type": "string", "description": "Exact column name. " + COL_NOTE},
            "top_n": {"type": "number", "description": "How many top values to return (default 10)"},
        },
        ["column"],
    ),
    _function(
        "get_top_rows",
        "Return the top or bottom N rows sorted by any metric, including the computed \"engagement\" column "
        "(favorites / views). Returns the row text plus key metrics in a readable format. Use this when someone "
        "asks for the best/worst/most/least performing posts or videos, e.g. \"show me the 10 most engaging "
        "tweets\" or \"what are the least viewed videos\".",
        {
            "sort_column": {
                "type": "string",
                "description": "Metric to sort by. Use \"engagement\" for the engagement ratio, or any exact column name.",
            },
            "n": {"type": "number", "description": "Number of rows to return (default 10)."},
            "ascending": {
                "type": "boolean",
                "description": "false = highest first (top performers), true = lowest first (worst performers). "
                               "Default false.",
            },
        },
        ["sort_column"],
    ),
    _function(
        "plot_metric_vs_time",
        "Plot any numeric field (views, likes, comments, viewCount, likeCount, etc.) against time. The chart is "
        "rendered directly in the chat. Use when the user asks how a metric changes over time, e.g. \"plot views "
        "over time\". Requires a date/time column (e.g. publishedAt, createdAt, date) and a numeric metric "
        "column. " + COL_NOTE,
        {
            "metric_column": {"type": "string", "description": "Exact column name of the numeric metric. " + COL_NOTE},
            "date_column": {
                "type": "string",
                "description": "Exact column name of the date/time field. Common names: publishedAt, createdAt, "
                               "date, timestamp. " + COL_NOTE,
            },
        },
        ["metric_column", "date_column"],
    ),
    _function(
        "compare_keyword_engagement",
        "Compare the mean of a metric for rows whose text mentions each keyword against rows that do not. "
        "Rendered as a bar chart. Use for questions like \"do tweets mentioning AI get more engagement?\".",
        {
            "keywords": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Keywords to look for in the text column (case-insensitive).",
            },
            "metric_column": {
                "type": "string",
                "description": "Metric to average. Defaults to \"engagement\". " + COL_NOTE,
            },
        },
        ["keywords"],
    ),
    _function(
        "play_video",
        "Open a video from the loaded channel data. Use when the user wants to play, watch, or open a video. "
        "NEVER ask the user for the URL; always look the video up in the loaded data. When the user says "
        "\"play the asbestos video\" pass search_by_title: \"asbestos\". When the user says \"play the most "
        "viewed video\" pass most_viewed: true. When the user says \"play the first video\" pass ordinal: 1.",
        {
            "video_url": {
                "type": "string",
                "description": "Full video URL or video ID. Omit if using search_by_title, most_viewed, or ordinal.",
            },
            "search_by_title": {"type": "string", "description": "Keyword to search for in video titles."},
            "most_viewed": {"type": "boolean", "description": "If true, play the video with the highest view count."},
            "ordinal": {"type": "number", "description": "Play the Nth video (1 = first, 2 = second, etc.)."},
            "title": {"type": "string", "description": "Video title for the clickable card display."},
            "thumbnail_url": {"type": "string", "description": "URL of the video thumbnail image for the card."},
        },
        [],
    ),
    _function(
        "compute_stats_json",
        "Compute mean, median, std, min, max for any numeric field in channel JSON/CSV data. Works on flat or "
        "nested field paths (e.g. \"viewCount\" or \"stats.views\"). " + COL_NOTE,
        {"field": {"type": "string", "description": "Exact field/column name for the numeric values."}},
        ["field"],
    ),
    _function(
        "generate_image",
        "Generate an image from a text prompt, using the attached photo as an anchor/reference when there is "
        "one. Use when the user asks to create, generate, draw, or restyle an image. Pass a DETAILED prompt with "
        "comma-separated descriptors covering location, clothing, style, lighting and mood.",
        {
            "prompt": {
                "type": "string",
                "description": "Detailed description of the desired image, e.g. \"professional photography, "
                               "woman in red dress, Tokyo street at night, neon lights, cinematic\".",
            },
        },
        ["prompt"],
    ),
]


# ============================================================================
# Helpers
# ============================================================================

def _available(headers: list[str]) -> str:
    return ", ".join(headers)


def _as_int(value: Any, default: int) -> int:
    number = parse_number(value)
    if number is None or number < 1:
        return default
    return int(number)


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _round(value: float) -> float:
    return round(float(value), STAT_DIGITS)


def _describe(values: list[float]) -> dict[str, Any]:
    """Population statistics; every figure shares one rounding so min <= mean <= max holds."""
    arr = np.asarray(values, dtype=float)
    return {
        "count": int(arr.size),
        "mean": _round(arr.mean()),
        "median": _round(np.median(arr)),
        "std": _round(arr.std(ddof=0)),
        "min": _round(arr.min()),
        "max": _round(arr.max()),
    }


def _nested_values(df: pd.DataFrame, headers: list[str], path: str) -> tuple[Optional[str], list[float]]:
    """Resolve "column.key.subkey" paths into dict-valued cells."""
    head, _, rest = path.partition(".")
    col = resolve_column(headers, head)
    if col is None or not rest:
        return None, []
    keys = rest.split(".")
    values = []
    for cell in df[col].tolist():
        for key in keys:
            cell = cell.get(key) if isinstance(cell, dict) else None
        number = parse_number(cell)
        if number is not None:
            values.append(number)
    return f"{col}.{rest}", values


def _ordinal_suffix(n: int) -> str:
    if 10 <= n % 100 <= 20:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")


def _date_label(ts: pd.Timestamp) -> str:
    return f"{ts.strftime('%b')} {ts.day}, '{ts.strftime('%y')}"


def is_chart_payload(result: Any) -> bool:
    return isinstance(result, dict) and "chart_type" in result and "error" not in result


def result_for_model(result: dict[str, Any]) -> dict[str, Any]:
    """Compact form of a tool result to hand back to the model (no image bytes, no full series)."""
    chart_type = result.get("chart_type") if isinstance(result, dict) else None
    if chart_type == ChartType.GENERATED_IMAGE:
        return {"status": "Image generated and shown to the user."}
    if chart_type == ChartType.METRIC_VS_TIME:
        data = result.get("data", [])
        values = [point["value"] for point in data]
        return {
            "status": "Chart rendered for the user.",
            "metric_column": result.get("metric_column"),
            "date_column": result.get("date_column"),
            "points": len(data),
            "first": data[0] if data else None,
            "last": data[-1] if data else None,
            "min": min(values) if values else None,
            "max": max(values) if values else None,
        }
    if chart_type == ChartType.ENGAGEMENT:
        return {"status": "Chart rendered for the user.", **{k: v for k, v in result.items() if k != "chart_type"}}
    return result


# ============================================================================
# Operations
# ============================================================================

def compute_column_stats(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    headers = ctx.headers
    name = args.get("column")
    col = resolve_column(headers, name)
    if col is None:
        return column_not_found(name, headers)
    values = numeric_values(ctx.df, col)
    if not values:
        return {"error": f"No numeric values found in column \"{col}\". Available columns: {_available(headers)}"}
    return {"column": col, **_describe(values)}


def compute_stats_json(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    headers = ctx.headers
    name = args.get("field")
    col = resolve_column(headers, name)
    if col is not None:
        field_name, values = col, numeric_values(ctx.df, col)
    elif isinstance(name, str) and "." in name:
        field_name, values = _nested_values(ctx.df, headers, name)
        if field_name is None:
            return column_not_found(name, headers, label="Field")
    else:
        return column_not_found(name, headers, label="Field")
    if not values:
        return {"error": f"No numeric values in field \"{field_name}\". Available: {_available(headers)}"}
    return {"field": field_name, **_describe(values)}


def get_value_counts(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    headers = ctx.headers
    name = args.get("column")
    col = resolve_column(headers, name)
    if col is None:
        return column_not_found(name, headers)
    top_n = _as_int(args.get("top_n"), DEFAULT_TOP_N)

    # Counter keeps first-seen order and sorted() is stable, so ties stay in that order.
    counts = Counter(str(v) for v in ctx.df[col].tolist() if not is_empty_cell(v))
    ranked = sorted(counts.items(), key=lambda kv: -kv[1])[:top_n]
    return {
        "column": col,
        "total_rows": len(ctx.df),
        "value_counts": {value: int(count) for value, count in ranked},
    }


def get_top_rows(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    headers = ctx.headers
    name = args.get("sort_column")
    sort_col = resolve_column(headers, name)
    if sort_col is None:
        return column_not_found(name, headers)
    n = _as_int(args.get("n"), DEFAULT_TOP_N)
    ascending = _as_bool(args.get("ascending"), default=False)

    keys = [parse_number(v) for v in ctx.df[sort_col].tolist()]
    if all(k is None for k in keys):
        return {"error": f"No numeric values found in column \"{sort_col}\". Available columns: {_available(headers)}"}

    text_col = find_header(headers, TEXT_COLUMN_PATTERNS)
    fav_col = find_header(headers, FAVORITE_COLUMN_PATTERNS[:1])
    view_col = find_header(headers, VIEW_COLUMN_PATTERNS[:1])
    eng_col = ENGAGEMENT_COLUMN if ENGAGEMENT_COLUMN in headers else None

    # Numeric rows are ordered stably; rows without a numeric value keep source order after them.
    numeric_positions = [i for i, k in enumerate(keys) if k is not None]
    numeric_positions.sort(key=lambda i: keys[i] if ascending else -keys[i])
    order = numeric_positions + [i for i, k in enumerate(keys) if k is None]

    rows = []
    for rank, pos in enumerate(order[:n], start=1):
        record = ctx.df.iloc[pos]
        out: dict[str, Any] = {"rank": rank}
        if text_col:
            out["text"] = "" if is_empty_cell(record[text_col]) else str(record[text_col])[:TEXT_PREVIEW_CHARS]
        for col in (sort_col, fav_col, view_col, eng_col):
            if col and col not in out:
                out[col] = None if is_empty_cell(record[col]) else record[col]
        rows.append(out)

    return {
        "sort_column": sort_col,
        "direction": "ascending (lowest first)" if ascending else "descending (highest first)",
        "count": len(rows),
        "rows": rows,
    }


def parse_timestamps(values: list[Any]) -> pd.Series:
    """Generic date parsing; bare numbers are epoch milliseconds, anything unparseable becomes NaT."""
    epoch = pd.Series([
        isinstance(v, (int, float, np.number)) and not isinstance(v, bool) and not is_empty_cell(v)
        for v in values
    ], dtype=bool)
    text = pd.Series(["" if is_empty_cell(v) or e else str(v) for v, e in zip(values, epoch)], dtype=object)
    parsed = pd.to_datetime(text, errors="coerce", utc=True, format="mixed")
    if not epoch.any():
        return parsed
    millis = pd.Series([float(v) if e else np.nan for v, e in zip(values, epoch)], dtype=float)
    return parsed.where(~epoch, pd.to_datetime(millis, unit="ms", errors="coerce", utc=True))


def plot_metric_vs_time(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    headers = ctx.headers
    if ctx.df.empty:
        return {"error": "No data loaded. Upload a CSV or JSON file first, then ask to plot."}
    metric_col = resolve_column(headers, args.get("metric_column"))
    if metric_col is None:
        return column_not_found(args.get("metric_column"), headers)
    date_col = resolve_column(headers, args.get("date_column"))
    if date_col is None:
        return column_not_found(args.get("date_column"), headers)

    raw_dates = ctx.df[date_col].tolist()
    parsed = parse_timestamps(raw_dates)
    points = []
    for raw_date, ts, raw_value in zip(raw_dates, parsed, ctx.df[metric_col].tolist()):
        value = parse_number(raw_value)
        if value is None or pd.isna(ts):
            continue
        points.append((ts, raw_date, value))

    if not points:
        return {
            "error": f"No valid date+metric pairs. Check columns \"{metric_col}\" and \"{date_col}\". "
                     f"Available: {_available(headers)}"
        }

    points.sort(key=lambda p: p[0])
    return {
        "chart_type": ChartType.METRIC_VS_TIME,
        "metric_column": metric_col,
        "date_column": date_col,
        "data": [
            {"date": str(raw_date), "value": value, "label": _date_label(ts)}
            for ts, raw_date, value in points
        ],
    }


def compare_keyword_engagement(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    headers = ctx.headers
    keywords = args.get("keywords") or []
    if isinstance(keywords, str):
        keywords = [k for k in (part.strip() for part in keywords.split(",")) if k]
    keywords = [str(k).strip() for k in keywords if str(k).strip()]
    if not keywords:
        return {"error": "Provide at least one keyword to compare."}

    text_col = find_header(headers, TEXT_COLUMN_PATTERNS)
    if not text_col:
        return {"error": f"No text column found to search for keywords. Available columns: {_available(headers)}"}
    metric_name = args.get("metric_column") or ENGAGEMENT_COLUMN
    metric_col = resolve_column(headers, metric_name)
    if metric_col is None:
        return column_not_found(metric_name, headers)

    texts = ["" if is_empty_cell(v) else str(v).lower() for v in ctx.df[text_col].tolist()]
    metrics = [parse_number(v) for v in ctx.df[metric_col].tolist()]
    if all(m is None for m in metrics):
        return {"error": f"No numeric values found in column \"{metric_col}\". Available columns: {_available(headers)}"}

    data = []
    for keyword in keywords:
        needle = keyword.lower()
        with_vals = [m for t, m in zip(texts, metrics) if m is not None and needle in t]
        without_vals = [m for t, m in zip(texts, metrics) if m is not None and needle not in t]
        data.append({
            "name": keyword,
            "with_keyword": _round(np.mean(with_vals)) if with_vals else 0.0,
            "without_keyword": _round(np.mean(without_vals)) if without_vals else 0.0,
            "with_count": len(with_vals),
            "without_count": len(without_vals),
        })

    return {"chart_type": ChartType.ENGAGEMENT, "metric_column": metric_col, "data": data}


def play_video(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    headers = ctx.headers
    df = ctx.df
    url = str(args.get("video_url") or "").strip()
    display_title = args.get("title") or "Watch video"
    thumbnail_url = args.get("thumbnail_url") or None

    thumb_col = find_header(headers, THUMBNAIL_COLUMN_PATTERNS)
    link_headers = [h for h in headers if h != thumb_col]
    title_col = find_header(link_headers, TITLE_COLUMN_PATTERNS)
    url_col = find_header(link_headers, URL_COLUMN_PATTERNS)
    id_col = find_header(link_headers, ID_COLUMN_PATTERNS)
    view_col = find_header(headers, [re.compile(r"^viewCount$", re.IGNORECASE)] + VIEW_COLUMN_PATTERNS)

    match: Optional[pd.Series] = None
    if not url and args.get("search_by_title") is not None:
        term = str(args.get("search_by_title")).strip().lower()
        if not term:
            return {"error": "search_by_title cannot be empty"}
        if not title_col:
            return {"error": f"No title column found in the data. Available: {_available(headers)}"}
        titles = df[title_col].map(lambda v: "" if is_empty_cell(v) else str(v))
        hits = df[titles.str.lower().str.contains(term, regex=False)]
        if hits.empty:
            return {"error": f"No video found with \"{args.get('search_by_title')}\" in the title. "
                             "Try a different keyword."}
        match = hits.iloc[0]
    elif not url and _as_bool(args.get("most_viewed")):
        if not view_col:
            return {"error": f"No view count column found. Available: {_available(headers)}"}
        views = [parse_number(v) or 0.0 for v in df[view_col].tolist()]
        if not views:
            return {"error": "No rows loaded."}
        match = df.iloc[int(np.argmax(views))]
    elif not url and args.get("ordinal") is not None:
        ordinal = parse_number(args.get("ordinal"))
        if ordinal is None or ordinal < 1:
            return {"error": f"ordinal must be 1 or greater. Only {len(df)} video(s) in the data."}
        idx = int(ordinal)
        if idx > len(df):
            return {"error": f"There is no {idx}{_ordinal_suffix(idx)} video. Only {len(df)} video(s) in the data."}
        match = df.iloc[idx - 1]

    if match is not None:
        raw = None
        for col in (url_col, id_col):
            if col and not is_empty_cell(match[col]):
                raw = match[col]
                break
        if raw is None:
            return {"error": f"The matched row has no URL or id value. Available: {_available(headers)}"}
        url = str(raw).strip()
        if title_col and not is_empty_cell(match[title_col]):
            display_title = str(match[title_col])
        if thumb_col and not is_empty_cell(match[thumb_col]):
            thumbnail_url = str(match[thumb_col])

    if not url:
        return {"error": "Provide video_url, search_by_title, most_viewed: true, or ordinal to find the video "
                         "in the loaded data."}
    if not re.match(r"^https?://", url, re.IGNORECASE):
        url = WATCH_URL_TEMPLATE.format(url)
    return {"open_url": url, "title": display_title, "thumbnail_url": thumbnail_url}


def generate_image(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    prompt = args.get("prompt")
    if not prompt or not isinstance(prompt, str):
        return {"error": "prompt is required"}
    if ctx.image_generator is None:
        return {"error": "Image generation is not available yet. The administrator needs to configure the API key."}

    anchor = ctx.images[0] if ctx.images else None
    anchor_bytes = decode_anchor_image(anchor.get("data")) if anchor else None
    mime_type = (anchor or {}).get("mime_type") or "image/jpeg"
    try:
        image = ctx.image_generator(
            prompt=prompt,
            anchor_image=anchor_bytes,
            anchor_mime_type=mime_type if mime_type.startswith("image/") else "image/jpeg",
        )
    except Exception as e:
        return {"error": describe_image_error(e).message}
    return {
        "chart_type": ChartType.GENERATED_IMAGE,
        "mime_type": image.get("mime_type", "image/png"),
        "data": image["image_base64"],
    }


TOOL_REGISTRY: dict[str, Callable[[dict[str, Any], ToolContext], dict[str, Any]]] = {
    "compute_column_stats": compute_column_stats,
    "get_value_counts": get_value_counts,
    "get_top_rows": get_top_rows,
    "plot_metric_vs_time": plot_metric_vs_time,
    "compare_keyword_engagement": compare_keyword_engagement,
    "play_video": play_video,
    "compute_stats_json": compute_stats_json,
    "generate_image": generate_image,
}


def execute_tool(
    tool_name: str,
    args: Optional[dict[str, Any]],
    df: Optional[pd.DataFrame],
    images: Optional[list[dict[str, Any]]] = None,
    image_generator: Optional[Callable[..., dict[str, str]]] = None,
) -> dict[str, Any]:
    """Run one named operation; failures come back as {"error": ...}, never raised."""
    handler = TOOL_REGISTRY.get(tool_name)
    if handler is None:
        return {"error": f"Unknown tool: {tool_name}. Available tools: {', '.join(TOOL_REGISTRY)}"}
    ctx = ToolContext(
        df=df if df is not None else pd.DataFrame(),
        images=list(images or []),
        image_generator=image_generator,
    )
    print(f"[tool] {tool_name} args={args} rows={len(ctx.df)}")
    return handler(dict(args or {}), ctx)

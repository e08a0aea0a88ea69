"""
Tabletalk Backend - Intent Module
Per-turn routing between analytic tools, code execution and grounded generation
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Optional


class Route:
    TOOLS = "tools"
    CODE_EXECUTION = "code_execution"
    GROUNDED = "grounded"


# Requests the tool registry cannot produce (statistical modeling, plot types, plotting libraries).
PYTHON_ONLY_PATTERN = re.compile(
    r"\b(regression|scatter|histogram|seaborn|matplotlib|numpy|time.?series|heatmap|box.?plot|violin"
    r"|distribut\w*|linear.?model|logistic|forecast\w*|trend.?line)\b",
    re.IGNORECASE,
)

# Programming-adjacent vocabulary.
CODE_PATTERN = re.compile(
    r"\b(code|python|script|program\w*|pandas|dataframe|function|algorithm|compute|calculate"
    r"|correlat\w*|statistic\w*|plot|chart|graph|visuali[sz]\w*)\b",
    re.IGNORECASE,
)

IMAGE_GENERATION_PATTERN = re.compile(
    r"\b(generate|create|draw|make|style|chic|stylish).*(image|pic|photo|picture)"
    r"|image\s+generat"
    r"|put\s+(me|this|him|her)\s+in"
    r"|(transform|style|make)\s+(this|me|it|him|her)"
    r"|get\s+.*\s+image"
    r"|(try|do)\s+it\s+again"
    r"|(that|the)\s+.*\s+image"
    r"|try\s+again"
    r"|let'?s\s+try",
    re.IGNORECASE,
)

IMAGE_MENTION_PATTERN = re.compile(
    r"\b(image|photo|picture|generate|transform|style|chic|stylish)\b", re.IGNORECASE
)
IMAGE_ACTION_PATTERN = re.compile(r"\b(get|make|create|generate|draw|try|do|conjure)\b", re.IGNORECASE)

TIME_PLOT_PATTERN = re.compile(
    r"\bplot\s+.*\s+(vs|over)\s+time"
    r"|plot\s+(views|likes|metric|engagement)"
    r"|plot\s+.*\s+over\s+time"
    r"|channel\s+videos?\s+.*\s+plot",
    re.IGNORECASE,
)

IMAGE_FAILURE_PATTERN = re.compile(
    r"image|generate_?image|NameError|glitch|image generation tool|conjure|spell", re.IGNORECASE
)
RETRY_PATTERN = re.compile(r"\b(try|yes|retry|ok|sure|again|please|do it|let'?s)\b", re.IGNORECASE)
RETRY_MAX_CHARS = 80


@dataclass(frozen=True)
class TurnContext:
    """What the classifier may look at for one user turn."""
    text: str
    rows_loaded: bool = False
    dataset_attached: bool = False
    has_images: bool = False
    last_assistant_text: str = ""

    @property
    def has_dataset(self) -> bool:
        return self.rows_loaded or self.dataset_attached


@dataclass(frozen=True)
class IntentSignals:
    python_only: bool
    code_wanted: bool
    wants_image: bool
    mentions_image: bool
    wants_time_plot: bool
    retry_after_image_failure: bool
    force_tools: bool


@dataclass(frozen=True)
class RouteGuard:
    name: str
    route: str
    applies: Callable[[TurnContext, IntentSignals], bool]


@dataclass(frozen=True)
class RouteDecision:
    route: str
    rule: str
    signals: Optional[IntentSignals] = field(default=None, compare=False)

    @property
    def use_tools(self) -> bool:
        return self.route == Route.TOOLS

    @property
    def use_code_execution(self) -> bool:
        return self.route == Route.CODE_EXECUTION


def detect_signals(ctx: TurnContext) -> IntentSignals:
    text = ctx.text.strip()
    python_only = bool(PYTHON_ONLY_PATTERN.search(text))
    # With rows already loaded the tool registry beats code execution for anything it can do.
    code_wanted = bool(CODE_PATTERN.search(text)) and not ctx.rows_loaded
    wants_image = bool(IMAGE_GENERATION_PATTERN.search(text))
    mentions_image = bool(IMAGE_MENTION_PATTERN.search(text))
    wants_time_plot = bool(TIME_PLOT_PATTERN.search(text))
    retry_after_image_failure = (
        len(text) < RETRY_MAX_CHARS
        and bool(RETRY_PATTERN.search(text))
        and bool(IMAGE_FAILURE_PATTERN.search(ctx.last_assistant_text or ""))
    )
    force_tools = (
        wants_image
        or ctx.has_images
        or retry_after_image_failure
        or (mentions_image and bool(IMAGE_ACTION_PATTERN.search(text)))
    )
    return IntentSignals(
        python_only=python_only,
        code_wanted=code_wanted,
        wants_image=wants_image,
        mentions_image=mentions_image,
        wants_time_plot=wants_time_plot,
        retry_after_image_failure=retry_after_image_failure,
        force_tools=force_tools,
    )


def _dataset_default_tools(ctx: TurnContext, s: IntentSignals) -> bool:
    return (
        ctx.has_dataset
        and not s.python_only
        and (not s.code_wanted or s.mentions_image or s.wants_time_plot)
        and (not ctx.dataset_attached or s.wants_image or ctx.has_images)
    )


# Evaluated top to bottom; the first guard that applies decides the turn.
ROUTE_GUARDS: list[RouteGuard] = [
    RouteGuard(
        "force_tools_for_image",
        Route.TOOLS,
        lambda ctx, s: s.force_tools,
    ),
    RouteGuard(
        "python_only",
        Route.CODE_EXECUTION,
        lambda ctx, s: s.python_only,
    ),
    RouteGuard(
        "code_wanted_with_dataset",
        Route.CODE_EXECUTION,
        lambda ctx, s: s.code_wanted and ctx.has_dataset and not s.mentions_image and not s.wants_time_plot,
    ),
    RouteGuard(
        "dataset_default_tools",
        Route.TOOLS,
        _dataset_default_tools,
    ),
]

GROUNDED_FALLBACK = "grounded_fallback"


def classify_turn(ctx: TurnContext, guards: list[RouteGuard] = ROUTE_GUARDS) -> RouteDecision:
    """Pick exactly one execution strategy for the turn; never undecided."""
    signals = detect_signals(ctx)
    for guard in guards:
        if guard.applies(ctx, signals):
            return RouteDecision(route=guard.route, rule=guard.name, signals=signals)
    return RouteDecision(route=Route.GROUNDED, rule=GROUNDED_FALLBACK, signals=signals)

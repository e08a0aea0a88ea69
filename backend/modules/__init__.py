"""
Tabletalk Backend Modules
"""

from .ingestion import (
    parse_csv_text,
    parse_json_text,
    load_json_rows,
    detect_source_kind,
    truncate_source,
)

from .profiling import (
    ENGAGEMENT_COLUMN,
    parse_number,
    resolve_column,
    enrich,
    summarize,
    slim_project,
)

from .intent import (
    Route,
    TurnContext,
    RouteDecision,
    ROUTE_GUARDS,
    classify_turn,
)

from .tools import (
    ChartType,
    TOOL_DECLARATIONS,
    TOOL_REGISTRY,
    execute_tool,
    is_chart_payload,
)

from .image_generation import (
    ImageGenerationError,
    compute_wait_seconds,
    run_with_retry,
    describe_image_error,
    decode_anchor_image,
    generate_image,
)

from .code_execution import (
    secure_exec,
    load_frame,
)

from .assistant import (
    build_turn_prompt,
    build_messages,
    chat_with_tools,
    run_code_execution,
    stream_grounded,
)

__all__ = [
    # Ingestion
    'parse_csv_text',
    'parse_json_text',
    'load_json_rows',
    'detect_source_kind',
    'truncate_source',
    # Profiling
    'ENGAGEMENT_COLUMN',
    'parse_number',
    'resolve_column',
    'enrich',
    'summarize',
    'slim_project',
    # Intent
    'Route',
    'TurnContext',
    'RouteDecision',
    'ROUTE_GUARDS',
    'classify_turn',
    # Tools
    'ChartType',
    'TOOL_DECLARATIONS',
    'TOOL_REGISTRY',
    'execute_tool',
    'is_chart_payload',
    # Image generation
    'ImageGenerationError',
    'compute_wait_seconds',
    'run_with_retry',
    'describe_image_error',
    'decode_anchor_image',
    'generate_image',
    # Code execution
    'secure_exec',
    'load_frame',
    # Assistant
    'build_turn_prompt',
    'build_messages',
    'chat_with_tools',
    'run_code_execution',
    'stream_grounded',
]

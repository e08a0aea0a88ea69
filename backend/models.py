"""
Tabletalk Backend - Pydantic Models
All request/response schemas
"""

from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field


class ImageAttachment(BaseModel):
    mime_type: str = "image/jpeg"
    data: str  # base64, no data: prefix


class HistoryMessage(BaseModel):
    role: str  # "user", "assistant" or "model"
    content: str = ""


class ChatRequest(BaseModel):
    session_id: str
    message: str = ""
    history: list[HistoryMessage] = []
    images: list[ImageAttachment] = []
    # Raw file text attached to this turn; ingested before the turn is classified.
    attachment_filename: Optional[str] = None
    attachment_content: Optional[str] = None
    last_assistant_text: Optional[str] = None


class KeywordEngagement(BaseModel):
    name: str
    with_keyword: float
    without_keyword: float
    with_count: int
    without_count: int


class EngagementChart(BaseModel):
    chart_type: Literal["engagement"]
    metric_column: str
    data: list[KeywordEngagement]


class TimePoint(BaseModel):
    date: str
    value: float
    label: str


class MetricVsTimeChart(BaseModel):
    chart_type: Literal["metric_vs_time"]
    metric_column: str
    date_column: str
    data: list[TimePoint]


class GeneratedImageChart(BaseModel):
    chart_type: Literal["generated_image"]
    mime_type: str
    data: str


ChartPayload = Annotated[
    Union[EngagementChart, MetricVsTimeChart, GeneratedImageChart],
    Field(discriminator="chart_type"),
]


class ToolInvocation(BaseModel):
    name: str
    args: dict[str, Any]
    result: dict[str, Any]


class ResponsePart(BaseModel):
    type: Literal["text", "code", "result"]
    text: Optional[str] = None
    language: Optional[str] = None
    code: Optional[str] = None
    outcome: Optional[str] = None
    output: Optional[str] = None


class ChatResponse(BaseModel):
    route: str
    rule: str
    text: str
    parts: list[ResponsePart] = []
    charts: list[ChartPayload] = []
    tool_calls: list[ToolInvocation] = []


class SessionResponse(BaseModel):
    session_id: str


class DatasetInfoResponse(BaseModel):
    filename: str
    kind: str
    row_count: int
    headers: list[str]
    truncated: bool
    has_slim_projection: bool


class UploadResponse(DatasetInfoResponse):
    summary: str


class ToolRequest(BaseModel):
    args: dict[str, Any] = {}
    images: list[ImageAttachment] = []


class ImageRequest(BaseModel):
    prompt: str
    anchor_image: Optional[str] = None  # base64
    anchor_mime_type: Optional[str] = None


class ImageResponse(BaseModel):
    image_base64: str
    mime_type: str

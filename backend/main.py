"""
Tabletalk Backend - Chat Analytics over CSV/JSON Data
Ingestion, enrichment, per-turn routing and analytic tool execution behind a FastAPI surface
"""

import json
from time import perf_counter
from typing import Any, Iterator, Optional

import pandas as pd
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import TypeAdapter

from config import (
    CHAT_MODEL,
    CORS_ORIGINS,
    IMAGE_EDIT_MODEL,
    IMAGE_MAX_RETRIES,
    IMAGE_MODEL,
    MAX_SOURCE_CHARS,
    MAX_TOOL_ROUNDS,
    SEARCH_MODEL,
    get_image_client,
    get_openai_client,
)

# Import models
from models import (
    ChartPayload, ChatRequest, ChatResponse, DatasetInfoResponse, ImageRequest,
    ImageResponse, SessionResponse, ToolRequest, UploadResponse,
)

# Import storage
from storage import Dataset, SessionContext, create_session, get_session

# Import modules
from modules import (
    RouteDecision,
    TOOL_REGISTRY,
    TurnContext,
    build_messages,
    build_turn_prompt,
    chat_with_tools,
    classify_turn,
    decode_anchor_image,
    describe_image_error,
    detect_source_kind,
    enrich,
    execute_tool,
    generate_image,
    load_frame,
    parse_csv_text,
    parse_json_text,
    run_code_execution,
    slim_project,
    stream_grounded,
    summarize,
    truncate_source,
)

app = FastAPI(
    title="Tabletalk API",
    description="Chat analytics over CSV and JSON exports",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

CHARTS_ADAPTER = TypeAdapter(list[ChartPayload])


# ============================================================================
# Helper Functions
# ============================================================================

def print_pipeline_timing(endpoint: str, durations: dict[str, float]) -> None:
    """Print formatted execution timings for ingestion pipeline phases."""
    print(f"\n=== {endpoint} Pipeline Timing ===")
    print(f"Parsing: {durations['parsing']:.2f}s")
    print(f"Enrichment: {durations['enrichment']:.2f}s")
    print(f"Summarization: {durations['summarization']:.2f}s")
    print(f"Slim Projection: {durations['slim_projection']:.2f}s")
    print(f"Total Pipeline: {durations['total']:.2f}s")
    print("=" * (len(endpoint) + 20))


def ingest_upload(filename: Optional[str], text: str, endpoint: str = "/upload") -> Optional[Dataset]:
    """Parse, enrich and digest one upload. None when nothing usable was found."""
    kind = detect_source_kind(filename, text)
    if kind is None:
        return None
    filename = filename or f"attachment.{kind}"

    t0 = perf_counter()
    source_text, truncated = None, False
    if kind == "json":
        parsed = parse_json_text(text)
        if parsed is None:
            return None
        headers, df = parsed
    else:
        headers, df = parse_csv_text(text)
        source_text, truncated = truncate_source(text, MAX_SOURCE_CHARS)
    t1 = perf_counter()
    if not headers or df.empty:
        return None

    df, headers = enrich(df, headers)
    t2 = perf_counter()
    summary = summarize(df, headers)
    t3 = perf_counter()
    slim_csv = slim_project(df, headers) if kind == "csv" else ""
    t4 = perf_counter()

    print_pipeline_timing(endpoint, {
        "parsing": t1 - t0,
        "enrichment": t2 - t1,
        "summarization": t3 - t2,
        "slim_projection": t4 - t3,
        "total": t4 - t0,
    })
    if truncated:
        print(f"[{endpoint}] Source text for {filename} truncated to {MAX_SOURCE_CHARS} characters")

    return Dataset(
        filename=filename,
        kind=kind,
        df=df,
        headers=headers,
        summary=summary,
        slim_csv=slim_csv,
        source_text=source_text,
        truncated=truncated,
    )


def dataset_info(dataset: Dataset) -> dict[str, Any]:
    return {
        "filename": dataset.filename,
        "kind": dataset.kind,
        "row_count": dataset.row_count,
        "headers": dataset.headers,
        "truncated": dataset.truncated,
        "has_slim_projection": bool(dataset.slim_csv),
    }


def chat_client():
    """Chat client for a turn; 503 when the API key has not been configured."""
    client = get_openai_client()
    if client is None:
        raise HTTPException(
            status_code=503,
            detail="Chat is not available yet. The administrator needs to configure the API key.",
        )
    return client


def image_generator(
    prompt: str,
    anchor_image: Optional[bytes] = None,
    anchor_mime_type: str = "image/jpeg",
) -> dict[str, str]:
    return generate_image(
        prompt,
        anchor_image=anchor_image,
        anchor_mime_type=anchor_mime_type,
        client=get_image_client(),
        text_model=IMAGE_MODEL,
        edit_model=IMAGE_EDIT_MODEL,
        max_retries=IMAGE_MAX_RETRIES,
    )


def prepare_turn(request: ChatRequest) -> tuple[SessionContext, RouteDecision, list[dict[str, Any]], list[dict[str, str]]]:
    """Ingest any attachment, classify the turn and assemble the model messages."""
    session = get_session(request.session_id)
    previous = session.dataset
    rows_loaded = previous is not None and previous.row_count > 0

    attachment_pending = False
    if request.attachment_content:
        dataset = ingest_upload(request.attachment_filename, request.attachment_content, "/chat")
        if dataset is None:
            raise HTTPException(
                status_code=400,
                detail=f"No rows found in {request.attachment_filename or 'the attachment'}.",
            )
        session.replace_dataset(dataset)
        attachment_pending = True

    images = [img.model_dump() for img in request.images]
    decision = classify_turn(TurnContext(
        text=request.message,
        rows_loaded=rows_loaded,
        dataset_attached=attachment_pending,
        has_images=bool(images),
        last_assistant_text=request.last_assistant_text or "",
    ))
    print(f"[chat] route={decision.route} rule={decision.rule} session={session.id}")

    prompt = build_turn_prompt(
        request.message,
        session.dataset,
        attachment_pending=attachment_pending,
        use_code_execution=decision.use_code_execution,
        has_images=bool(images),
    )
    history = [{"role": m.role, "content": m.content} for m in request.history]
    messages = build_messages(session.system_prompt, history, prompt, images)
    return session, decision, messages, images


def turn_executor(session: SessionContext, images: list[dict[str, str]]):
    df = session.dataset.df if session.dataset is not None else None

    def run(tool_name: str, args: Optional[dict[str, Any]]) -> dict[str, Any]:
        return execute_tool(tool_name, args, df, images=images, image_generator=image_generator)

    return run


def sandbox_frame(session: SessionContext) -> pd.DataFrame:
    dataset = session.dataset
    if dataset is None:
        return pd.DataFrame()
    return load_frame(dataset.source_text, dataset.df)


def ndjson(event: str, **payload: Any) -> str:
    return json.dumps({"type": event, **payload}, default=str) + "\n"


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/")
async def root():
    return {"status": "ok", "version": "1.0.0"}


@app.post("/sessions", response_model=SessionResponse)
async def create_session_endpoint():
    session = create_session()
    return SessionResponse(session_id=session.id)


@app.get("/sessions/{session_id}/dataset", response_model=DatasetInfoResponse)
async def get_dataset_endpoint(session_id: str):
    """Provenance of the active dataset, so callers can tell which upload a turn sees"""
    session = get_session(session_id)
    if session.dataset is None:
        raise HTTPException(status_code=404, detail="No dataset loaded for this session.")
    return DatasetInfoResponse(**dataset_info(session.dataset))


@app.post("/sessions/{session_id}/upload", response_model=UploadResponse)
async def upload_dataset(session_id: str, file: UploadFile = File(...)):
    session = get_session(session_id)
    if not file.filename or not file.filename.lower().endswith((".csv", ".json")):
        raise HTTPException(status_code=400, detail="Please upload a CSV or JSON file.")

    try:
        raw = await file.read()
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File must be UTF-8 text.")

    try:
        dataset = ingest_upload(file.filename, text, "/upload")
    except Exception as e:
        print(f"Ingestion failed for {file.filename}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    if dataset is None:
        raise HTTPException(status_code=400, detail=f"No rows found in {file.filename}.")

    session.replace_dataset(dataset)
    return UploadResponse(**dataset_info(dataset), summary=dataset.summary)


@app.post("/chat", response_model=ChatResponse)
def chat_endpoint(request: ChatRequest):
    client = chat_client()
    session, decision, messages, images = prepare_turn(request)

    try:
        if decision.use_tools:
            outcome = chat_with_tools(
                client, messages, turn_executor(session, images), CHAT_MODEL, max_rounds=MAX_TOOL_ROUNDS
            )
            return ChatResponse(
                route=decision.route,
                rule=decision.rule,
                text=outcome["text"],
                charts=CHARTS_ADAPTER.validate_python(outcome["charts"]),
                tool_calls=outcome["tool_calls"],
            )

        if decision.use_code_execution:
            parts = list(run_code_execution(client, messages, sandbox_frame(session), CHAT_MODEL))
            text = "\n\n".join(p["text"] for p in parts if p["type"] == "text" and p.get("text"))
            return ChatResponse(route=decision.route, rule=decision.rule, text=text, parts=parts)

        text = "".join(
            chunk["text"]
            for chunk in stream_grounded(client, messages, CHAT_MODEL, SEARCH_MODEL, has_images=bool(images))
        )
        return ChatResponse(route=decision.route, rule=decision.rule, text=text)
    except HTTPException:
        raise
    except Exception as e:
        print(f"[chat] {decision.route} turn failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/chat/stream")
def chat_stream_endpoint(request: ChatRequest):
    """
    Same turn as /chat, delivered as newline-delimited JSON events:
    route, text, part, charts, tool_calls, done (or error).
    """
    client = chat_client()
    session, decision, messages, images = prepare_turn(request)

    def events() -> Iterator[str]:
        yield ndjson("route", route=decision.route, rule=decision.rule)
        try:
            if decision.use_tools:
                outcome = chat_with_tools(
                    client, messages, turn_executor(session, images), CHAT_MODEL, max_rounds=MAX_TOOL_ROUNDS
                )
                if outcome["text"]:
                    yield ndjson("text", text=outcome["text"])
                if outcome["charts"]:
                    charts = CHARTS_ADAPTER.validate_python(outcome["charts"])
                    yield ndjson("charts", charts=CHARTS_ADAPTER.dump_python(charts))
                if outcome["tool_calls"]:
                    yield ndjson("tool_calls", tool_calls=outcome["tool_calls"])
            elif decision.use_code_execution:
                for part in run_code_execution(client, messages, sandbox_frame(session), CHAT_MODEL):
                    yield ndjson("part", part=part)
            else:
                for chunk in stream_grounded(client, messages, CHAT_MODEL, SEARCH_MODEL, has_images=bool(images)):
                    yield ndjson("text", text=chunk["text"])
            yield ndjson("done")
        except Exception as e:
            print(f"[chat/stream] {decision.route} turn failed: {e}")
            yield ndjson("error", message=str(e))

    return StreamingResponse(events(), media_type="application/x-ndjson")


@app.post("/sessions/{session_id}/tools/{tool_name}")
def run_tool_endpoint(session_id: str, tool_name: str, request: ToolRequest):
    """Execute one analytic operation directly against the active dataset"""
    session = get_session(session_id)
    if tool_name not in TOOL_REGISTRY:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown tool: {tool_name}. Available tools: {', '.join(TOOL_REGISTRY)}",
        )
    images = [img.model_dump() for img in request.images]
    return turn_executor(session, images)(tool_name, request.args)


@app.post("/generate-image", response_model=ImageResponse)
def generate_image_endpoint(request: ImageRequest):
    anchor = decode_anchor_image(request.anchor_image) if request.anchor_image else None
    try:
        image = image_generator(
            request.prompt,
            anchor_image=anchor,
            anchor_mime_type=request.anchor_mime_type or "image/jpeg",
        )
    except Exception as e:
        error = describe_image_error(e)
        print(f"[generate-image] {error.status_code}: {error.message}")
        raise HTTPException(status_code=error.status_code, detail=error.message)
    return ImageResponse(**image)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

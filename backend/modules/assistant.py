"""
Tabletalk Backend - Assistant Module
Language-model orchestration for the tool, code-execution and grounded-generation strategies
"""

import json
from typing import Any, Callable, Iterator, Optional

import pandas as pd
from openai import OpenAI

from .code_execution import format_result, secure_exec, strip_code_fences
from .tools import TOOL_DECLARATIONS, is_chart_payload, result_for_model

PYTHON_TOOL = {
    "type": "function",
    "function": {
        "name": "generate_python_analysis",
        "description": "Run pandas code against the loaded dataset for advanced statistics (regression, correlation, "
                       "distributions, forecasting) that the fixed analytic tools cannot produce.",
        "parameters": {
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "The python code to execute. Assign final answer to variable 'result' or print it.",
                },
                "explanation": {
                    "type": "string",
                    "description": "Explanation of the analysis.",
                },
            },
            "required": ["code", "explanation"],
        },
    },
}


def code_execution_note(truncated: bool) -> str:
    note = (
        "IMPORTANT: a pandas DataFrame named `df` already holds the full dataset"
        + (" (source truncated to its first 500,000 characters)" if truncated else "")
        + ". `pd` and `np` are available; imports are not allowed. "
        "Assign the final answer to `result` or print it.\n\n"
    )
    return note


def build_turn_prompt(
    text: str,
    dataset: Any = None,
    attachment_pending: bool = False,
    use_code_execution: bool = False,
    has_images: bool = False,
) -> str:
    """Prefix the utterance with the dataset digest the model needs to ground its answer."""
    prefix = ""
    if dataset is not None:
        slim_block = (
            f"\n\nFull dataset (key columns):\n```csv\n{dataset.slim_csv}\n```" if dataset.slim_csv else ""
        )
        note = code_execution_note(dataset.truncated) if use_code_execution else ""
        if attachment_pending:
            label = "JSON File" if dataset.kind == "json" else "CSV File"
            prefix = (
                f"[{label}: \"{dataset.filename}\" | {dataset.row_count} rows | "
                f"Columns: {', '.join(dataset.headers)}]\n\n"
                f"{dataset.summary}{slim_block}\n\n{note}---\n\n"
            )
        elif dataset.summary:
            prefix = (
                f"[Data columns: {', '.join(dataset.headers)}]\n\n"
                f"{dataset.summary}\n\n{note}---\n\n"
            )

    if text:
        body = text
    elif has_images:
        body = "What do you see in this image?"
    elif attachment_pending and dataset is not None:
        body = f"Please analyze this {'JSON' if dataset.kind == 'json' else 'CSV'} data."
    else:
        body = ""
    return prefix + body


def build_messages(
    system_prompt: str,
    history: list[dict[str, str]],
    prompt: str,
    images: Optional[list[dict[str, str]]] = None,
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in history:
        role = "user" if turn.get("role") == "user" else "assistant"
        content = turn.get("content") or ""
        if content:
            messages.append({"role": role, "content": content})

    if images:
        content: Any = [{"type": "text", "text": prompt}] + [
            {
                "type": "image_url",
                "image_url": {"url": f"data:{img.get('mime_type') or 'image/png'};base64,{img.get('data', '')}"},
            }
            for img in images
            if img.get("data")
        ]
    else:
        content = prompt
    messages.append({"role": "user", "content": content})
    return messages


def chat_with_tools(
    client: OpenAI,
    messages: list[dict[str, Any]],
    executor: Callable[[str, Optional[dict[str, Any]]], dict[str, Any]],
    model: str,
    max_rounds: int = 5,
) -> dict[str, Any]:
    """
    Function-calling loop: the model requests named operations, `executor` runs them,
    results go back to the model until it answers in text.
    Returns {"text", "charts", "tool_calls"}.
    """
    messages = list(messages)
    charts: list[dict[str, Any]] = []
    invocations: list[dict[str, Any]] = []

    for _ in range(max_rounds):
        resp = client.chat.completions.create(
            model=model,
            messages=messages,
            tools=TOOL_DECLARATIONS,
            temperature=0.3,
        )
        message = resp.choices[0].message
        tool_calls = message.tool_calls or []
        if not tool_calls:
            return {"text": (message.content or "").strip(), "charts": charts, "tool_calls": invocations}

        messages.append({
            "role": "assistant",
            "content": message.content,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in tool_calls
            ],
        })

        for call in tool_calls:
            try:
                args = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                args = None
            if isinstance(args, dict):
                result = executor(call.function.name, args)
            else:
                result = {"error": f"Arguments for {call.function.name} must be a JSON object."}

            invocations.append({"name": call.function.name, "args": args if isinstance(args, dict) else {}, "result": result})
            if is_chart_payload(result):
                charts.append(result)
            messages.append({
                "role": "tool",
                "tool_call_id": call.id,
                "content": json.dumps(result_for_model(result), default=str),
            })

    # Out of tool rounds: ask for a final answer from what has been gathered.
    resp = client.chat.completions.create(model=model, messages=messages, temperature=0.3)
    return {
        "text": (resp.choices[0].message.content or "").strip(),
        "charts": charts,
        "tool_calls": invocations,
    }


def run_code_execution(
    client: OpenAI,
    messages: list[dict[str, Any]],
    df: pd.DataFrame,
    model: str,
) -> Iterator[dict[str, Any]]:
    """Yield structured parts (text / code / result) for a code-execution turn."""
    messages = list(messages)
    resp = client.chat.completions.create(
        model=model,
        messages=messages,
        tools=[PYTHON_TOOL],
        tool_choice={"type": "function", "function": {"name": "generate_python_analysis"}},
        temperature=0.2,
        max_tokens=1200,
    )
    message = resp.choices[0].message
    if not message.tool_calls:
        yield {"type": "text", "text": (message.content or "").strip()}
        return

    call = message.tool_calls[0]
    try:
        args = json.loads(call.function.arguments or "{}")
    except json.JSONDecodeError as e:
        yield {"type": "text", "text": f"The generated analysis could not be read: {e}"}
        return

    code = strip_code_fences(str(args.get("code", "")))
    explanation = str(args.get("explanation", "")).strip()
    if explanation:
        yield {"type": "text", "text": explanation}
    yield {"type": "code", "language": "PYTHON", "code": code}

    ok, result = secure_exec(code, df)
    output = format_result(result)
    yield {"type": "result", "outcome": "OUTCOME_OK" if ok else "OUTCOME_FAILED", "output": output}

    messages.append({
        "role": "assistant",
        "content": None,
        "tool_calls": [{
            "id": call.id,
            "type": "function",
            "function": {"name": call.function.name, "arguments": call.function.arguments},
        }],
    })
    messages.append({"role": "tool", "tool_call_id": call.id, "content": output[:20000]})
    follow_up = client.chat.completions.create(model=model, messages=messages, temperature=0.3)
    narrative = (follow_up.choices[0].message.content or "").strip()
    if narrative:
        yield {"type": "text", "text": narrative}


def stream_grounded(
    client: OpenAI,
    messages: list[dict[str, Any]],
    chat_model: str,
    search_model: str,
    has_images: bool = False,
) -> Iterator[dict[str, Any]]:
    """Stream open, web-grounded generation; image turns go to the vision-capable chat model."""
    if has_images:
        stream = client.chat.completions.create(model=chat_model, messages=messages, stream=True)
    else:
        stream = client.chat.completions.create(
            model=search_model,
            messages=messages,
            stream=True,
            web_search_options={},
        )
    for chunk in stream:
        if not chunk.choices:
            continue
        delta = chunk.choices[0].delta
        if delta is not None and delta.content:
            yield {"type": "text", "text": delta.content}

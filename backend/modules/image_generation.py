"""
Tabletalk Backend - Image Generation Module
Rate-limit aware retries around the generative image service, with anchor-less fallback
"""

import base64
import binascii
import re
import time
from typing import Any, Callable, Optional, TypeVar

from openai import OpenAI

T = TypeVar("T")

DEFAULT_WAIT_SECONDS = 15.0
MAX_WAIT_SECONDS = 60.0
# Added on top of a "resets in N seconds" hint parsed from the error text.
HINT_BUFFER_SECONDS = 2.0
MAX_ANCHOR_BASE64_CHARS = 500_000
MIN_ANCHOR_BASE64_CHARS = 100

RATE_LIMIT_PATTERN = re.compile(r"429|too many requests|rate limit|throttl", re.IGNORECASE)
PAYMENT_PATTERN = re.compile(r"402|insufficient credit|payment required|billing", re.IGNORECASE)
RESET_HINT_PATTERNS = [
    re.compile(r"resets?\s+in\s+~?(\d+)", re.IGNORECASE),
    re.compile(r"~(\d+)\s*s", re.IGNORECASE),
]

BILLING_HINT = (
    "Your image generation account needs credit. Add billing in your provider dashboard, then try again."
)


class ImageGenerationError(Exception):
    """Human-readable image failure carrying the HTTP status to surface."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _status_code(err: BaseException) -> Optional[int]:
    status = getattr(err, "status_code", None)
    if status is None:
        status = getattr(getattr(err, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def is_rate_limited(err: BaseException) -> bool:
    return _status_code(err) == 429 or bool(RATE_LIMIT_PATTERN.search(str(err)))


def is_payment_required(err: BaseException) -> bool:
    return _status_code(err) == 402 or bool(PAYMENT_PATTERN.search(str(err)))


def _retry_after_seconds(err: BaseException) -> Optional[float]:
    raw = getattr(err, "retry_after", None)
    if raw is None:
        headers = getattr(getattr(err, "response", None), "headers", None)
        if headers is not None:
            raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def compute_wait_seconds(
    err: BaseException,
    default: float = DEFAULT_WAIT_SECONDS,
    ceiling: float = MAX_WAIT_SECONDS,
) -> float:
    """Wait before the next attempt: retry-after, else a parsed reset hint, else the default."""
    retry_after = _retry_after_seconds(err)
    if retry_after is not None:
        return min(max(retry_after, 0.0), ceiling)
    msg = str(err)
    for pattern in RESET_HINT_PATTERNS:
        match = pattern.search(msg)
        if match:
            return min(int(match.group(1)) + HINT_BUFFER_SECONDS, ceiling)
    return min(default, ceiling)


def run_with_retry(
    call: Callable[[], T],
    max_retries: int = 3,
    sleep: Callable[[float], Any] = time.sleep,
    label: str = "generate-image",
) -> T:
    """
    Invoke `call`, retrying only on rate limiting.
    Attempts are numbered 0..max_retries; any other failure, or a rate limit on the
    final attempt, propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return call()
        except Exception as err:
            if not is_rate_limited(err) or attempt >= max_retries:
                raise
            wait = compute_wait_seconds(err)
            print(f"[{label}] Rate limited, waiting {wait:.0f}s before retry {attempt + 1}/{max_retries}")
            sleep(wait)
            attempt += 1


def decode_anchor_image(data: Optional[str]) -> Optional[bytes]:
    """Decode a (possibly data-URL prefixed, unpadded) base64 image; None when unusable."""
    if not data or not isinstance(data, str):
        return None
    raw = re.sub(r"^data:image/\w+;base64,", "", data)
    raw = re.sub(r"\s", "", raw)
    if len(raw) > MAX_ANCHOR_BASE64_CHARS or len(raw) < MIN_ANCHOR_BASE64_CHARS:
        return None
    pad = len(raw) % 4
    if pad:
        raw += "=" * (4 - pad)
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError):
        return None


def describe_image_error(err: BaseException) -> ImageGenerationError:
    """Map a raw upstream failure onto a friendly, distinguishable error."""
    if isinstance(err, ImageGenerationError):
        return err
    msg = str(err)
    if is_rate_limited(err):
        wait = int(compute_wait_seconds(err, default=30.0))
        return ImageGenerationError(
            f"Rate limited by the image service. Wait ~{wait} seconds and try again. "
            "Limits reset automatically.",
            status_code=429,
        )
    if is_payment_required(err):
        return ImageGenerationError(BILLING_HINT, status_code=402)
    return ImageGenerationError(f"Image generation failed: {msg}", status_code=500)


def _extract_image(response: Any) -> str:
    data = getattr(response, "data", None) or []
    first = data[0] if data else None
    b64 = getattr(first, "b64_json", None) if first is not None else None
    if not b64:
        print(f"[generate-image] No image in output: {response}")
        raise ImageGenerationError("Invalid response format from the image service", status_code=500)
    return b64


def generate_image(
    prompt: str,
    anchor_image: Optional[bytes] = None,
    anchor_mime_type: str = "image/jpeg",
    client: Optional[OpenAI] = None,
    text_model: str = "dall-e-3",
    edit_model: str = "gpt-image-1",
    max_retries: int = 3,
    sleep: Callable[[float], Any] = time.sleep,
) -> dict[str, str]:
    """
    Generate an image for `prompt`. With an anchor image the identity-preserving edit
    model runs first; if it fails for any reason we fall back once to text-only generation.
    Returns {"image_base64", "mime_type"}; raises on failure.
    """
    if not prompt or not isinstance(prompt, str):
        raise ImageGenerationError("prompt is required", status_code=400)
    if client is None:
        raise ImageGenerationError(
            "Image generation is not available yet. The administrator needs to configure the API key.",
            status_code=503,
        )

    def text_only():
        return client.images.generate(
            model=text_model,
            prompt=prompt,
            n=1,
            response_format="b64_json",
        )

    if anchor_image:
        extension = anchor_mime_type.split("/")[-1] if anchor_mime_type.startswith("image/") else "jpeg"
        try:
            response = run_with_retry(
                lambda: client.images.edit(
                    model=edit_model,
                    image=(f"anchor.{extension}", anchor_image, anchor_mime_type),
                    prompt=prompt,
                ),
                max_retries=max_retries,
                sleep=sleep,
            )
            return {"image_base64": _extract_image(response), "mime_type": "image/png"}
        except Exception as e:
            print(f"[generate-image] Identity-preserving model failed, falling back to text-only: {e}")

    response = run_with_retry(text_only, max_retries=max_retries, sleep=sleep)
    return {"image_base64": _extract_image(response), "mime_type": "image/png"}

import base64
import sys
import unittest
from pathlib import Path
from types import SimpleNamespace

import httpx
import openai

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from modules.image_generation import (
    BILLING_HINT,
    ImageGenerationError,
    compute_wait_seconds,
    decode_anchor_image,
    describe_image_error,
    generate_image,
    run_with_retry,
)


def rate_limit_error(retry_after=None, message="Error code: 429 - Too Many Requests"):
    headers = {"retry-after": retry_after} if retry_after is not None else {}
    request = httpx.Request("POST", "https://api.openai.com/v1/images/generations")
    response = httpx.Response(429, headers=headers, request=request)
    return openai.RateLimitError(message, response=response, body=None)


class FlakyCall:
    """Raises the queued errors in order, then returns `result`."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.attempts = 0

    def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class WaitComputationTests(unittest.TestCase):
    def test_retry_after_header_is_used_exactly(self):
        self.assertEqual(compute_wait_seconds(rate_limit_error(retry_after="2")), 2.0)

    def test_retry_after_is_capped(self):
        self.assertEqual(compute_wait_seconds(rate_limit_error(retry_after="120")), 60.0)

    def test_reset_hint_adds_buffer(self):
        err = RuntimeError("429 rate limit exceeded, resets in 5 seconds")

        self.assertEqual(compute_wait_seconds(err), 7.0)

    def test_default_wait(self):
        self.assertEqual(compute_wait_seconds(rate_limit_error()), 15.0)


class RetryWrapperTests(unittest.TestCase):
    def test_rate_limited_call_waits_then_succeeds(self):
        sleeps = []
        call = FlakyCall([rate_limit_error(retry_after="2")], result="image")

        result = run_with_retry(call, max_retries=3, sleep=sleeps.append)

        self.assertEqual(result, "image")
        self.assertEqual(call.attempts, 2)
        self.assertEqual(sleeps, [2.0])

    def test_attempts_are_bounded(self):
        sleeps = []
        call = FlakyCall([rate_limit_error(retry_after="1") for _ in range(10)])

        with self.assertRaises(openai.RateLimitError):
            run_with_retry(call, max_retries=3, sleep=sleeps.append)

        self.assertEqual(call.attempts, 4)
        self.assertEqual(sleeps, [1.0, 1.0, 1.0])

    def test_other_errors_are_not_retried(self):
        sleeps = []
        call = FlakyCall([ValueError("bad prompt")])

        with self.assertRaises(ValueError):
            run_with_retry(call, max_retries=3, sleep=sleeps.append)

        self.assertEqual(call.attempts, 1)
        self.assertEqual(sleeps, [])

    def test_zero_retries_means_one_attempt(self):
        call = FlakyCall([rate_limit_error()])

        with self.assertRaises(openai.RateLimitError):
            run_with_retry(call, max_retries=0, sleep=lambda s: None)

        self.assertEqual(call.attempts, 1)


class ErrorMappingTests(unittest.TestCase):
    def test_rate_limit_maps_to_429(self):
        error = describe_image_error(rate_limit_error(retry_after="2"))

        self.assertEqual(error.status_code, 429)
        self.assertIn("Rate limited", error.message)

    def test_payment_maps_to_402(self):
        error = describe_image_error(RuntimeError("402 Payment Required: insufficient credit"))

        self.assertEqual(error.status_code, 402)
        self.assertEqual(error.message, BILLING_HINT)

    def test_other_failures_map_to_500(self):
        error = describe_image_error(RuntimeError("content policy violation"))

        self.assertEqual(error.status_code, 500)
        self.assertIn("content policy violation", error.message)


class FakeImages:
    def __init__(self, edit_error=None):
        self.edit_error = edit_error
        self.calls = []

    def edit(self, **kwargs):
        self.calls.append(("edit", kwargs))
        if self.edit_error:
            raise self.edit_error
        return SimpleNamespace(data=[SimpleNamespace(b64_json="ZWRpdA==")])

    def generate(self, **kwargs):
        self.calls.append(("generate", kwargs))
        return SimpleNamespace(data=[SimpleNamespace(b64_json="dGV4dA==")])


class GenerateImageTests(unittest.TestCase):
    def test_missing_client_is_not_configured(self):
        with self.assertRaises(ImageGenerationError) as ctx:
            generate_image("a fox", client=None)

        self.assertEqual(ctx.exception.status_code, 503)

    def test_empty_prompt(self):
        with self.assertRaises(ImageGenerationError) as ctx:
            generate_image("", client=SimpleNamespace(images=FakeImages()))

        self.assertEqual(ctx.exception.status_code, 400)

    def test_text_only_generation(self):
        images = FakeImages()
        result = generate_image("a fox", client=SimpleNamespace(images=images), sleep=lambda s: None)

        self.assertEqual(result, {"image_base64": "dGV4dA==", "mime_type": "image/png"})
        self.assertEqual([name for name, _ in images.calls], ["generate"])
        self.assertEqual(images.calls[0][1]["response_format"], "b64_json")

    def test_anchor_uses_edit_model(self):
        images = FakeImages()
        result = generate_image(
            "me as an astronaut", anchor_image=b"\x89PNG", anchor_mime_type="image/png",
            client=SimpleNamespace(images=images), sleep=lambda s: None,
        )

        self.assertEqual(result["image_base64"], "ZWRpdA==")
        self.assertEqual(images.calls[0][1]["image"], ("anchor.png", b"\x89PNG", "image/png"))

    def test_anchor_failure_falls_back_to_text_only(self):
        images = FakeImages(edit_error=RuntimeError("model unavailable"))
        result = generate_image(
            "me as an astronaut", anchor_image=b"\xff\xd8", client=SimpleNamespace(images=images),
            sleep=lambda s: None,
        )

        self.assertEqual(result["image_base64"], "dGV4dA==")
        self.assertEqual([name for name, _ in images.calls], ["edit", "generate"])


class AnchorDecodingTests(unittest.TestCase):
    def test_data_url_prefix_and_missing_padding(self):
        payload = bytes(range(200))
        encoded = base64.b64encode(payload).decode().rstrip("=")

        self.assertEqual(decode_anchor_image("data:image/png;base64," + encoded), payload)

    def test_too_short_is_ignored(self):
        self.assertIsNone(decode_anchor_image("abcd"))
        self.assertIsNone(decode_anchor_image(None))


if __name__ == "__main__":
    unittest.main()

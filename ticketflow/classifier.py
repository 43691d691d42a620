"""
Classification stage: one request to an OpenAI-compatible chat-completions
endpoint, parsed strictly into a ClassificationResult.

Any failure raises ClassificationError; the analysis pipeline substitutes a
fixed fallback result, so nothing here is retried.
"""

import json
import logging
from typing import Any, Optional, Sequence, Union

import httpx
from pydantic import ValidationError

from ticketflow.config import LLM_API_KEY, LLM_BASE_URL, LLM_MODEL, LLM_TEMPERATURE, LLM_TIMEOUT_SECONDS
from ticketflow.exceptions import ClassificationError
from ticketflow.models import ClassificationResult, ImageAttachment, ImageKind
from ticketflow.prompts import ANALYSIS_SYSTEM

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MIME = "image/jpeg"


def build_user_content(
    text: str,
    images: Optional[Sequence[ImageAttachment]] = None,
) -> Union[str, list[dict[str, Any]]]:
    """Plain text without images; otherwise a multi-part message (text first, then images)."""
    if not images:
        return text
    parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for img in images:
        if img.type == ImageKind.URL:
            url = img.data
        else:
            url = f"data:{img.mime_type or DEFAULT_IMAGE_MIME};base64,{img.data}"
        parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


def parse_completion(body: Any) -> ClassificationResult:
    """Extract and validate the JSON object from a chat-completions response body."""
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise ClassificationError("Response has no choices[0].message.content", kind="malformed")
    if not content or not isinstance(content, str):
        raise ClassificationError("Empty LLM response", kind="malformed")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"LLM content is not JSON: {e}", kind="malformed")
    if not isinstance(data, dict):
        raise ClassificationError("LLM content is not a JSON object", kind="malformed")
    try:
        return ClassificationResult.model_validate(data)
    except ValidationError as e:
        raise ClassificationError(f"LLM JSON does not match schema: {e}", kind="malformed")


class Classifier:
    """Async client for the classification model."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = LLM_BASE_URL,
        api_key: str = LLM_API_KEY,
        model: str = LLM_MODEL,
        timeout: float = LLM_TIMEOUT_SECONDS,
        temperature: float = LLM_TEMPERATURE,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.temperature = temperature

    def build_request(self, text: str, images: Optional[Sequence[ImageAttachment]] = None) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": ANALYSIS_SYSTEM},
                {"role": "user", "content": build_user_content(text, images)},
            ],
            "response_format": {"type": "json_object"},
            "temperature": self.temperature,
        }

    async def classify(
        self,
        text: str,
        images: Optional[Sequence[ImageAttachment]] = None,
    ) -> ClassificationResult:
        try:
            res = await self.client.post(
                f"{self.base_url}/chat/completions",
                json=self.build_request(text, images),
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise ClassificationError(f"LLM request failed: {e!r}", kind="transport")

        if not res.is_success:
            detail = res.reason_phrase
            try:
                detail = res.json().get("error", {}).get("message") or detail
            except (ValueError, AttributeError):
                pass
            raise ClassificationError(f"LLM error {res.status_code}: {detail}", kind="transport")

        try:
            body = res.json()
        except ValueError as e:
            raise ClassificationError(f"LLM response is not JSON: {e}", kind="malformed")
        result = parse_completion(body)
        logger.debug("Classified as %s / %s (priority %d).", result.category, result.sentiment, result.priority)
        return result

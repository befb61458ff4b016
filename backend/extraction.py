"""Pre-fill a task from the contents of a web page using Claude."""
import html
import json
import re
from datetime import datetime
from typing import Optional

import anthropic
import httpx
import structlog
from pydantic import ValidationError

from models import ExtractedTask
from prompts import EXTRACT_TASK_PROMPT

log = structlog.get_logger()

MAX_CONTENT_CHARS = 20000
BLOCKED_MESSAGE = (
    "Failed to access the URL. The website may be blocking automated access. "
    "Please try a different link or enter the task manually."
)
UNEXPECTED_MESSAGE = "An unexpected error occurred while trying to extract the task."


class ExtractionError(Exception):
    """Raised with a message that can be shown to the user."""


def html_to_text(raw: str) -> str:
    raw = re.sub(r"(?is)<(script|style|noscript)[^>]*>.*?</\1>", " ", raw)
    text = re.sub(r"<[^>]+>", " ", raw)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if present."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]  # Remove first line (```json)
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]  # Remove last line (```)
        text = "\n".join(lines)
    return text


async def fetch_page_text(url: str, http_client: httpx.AsyncClient) -> str:
    try:
        response = await http_client.get(url, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as e:
        log.error("extract_fetch_failed", url=url, error=str(e) or type(e).__name__)
        raise ExtractionError(BLOCKED_MESSAGE) from e
    return html_to_text(response.text)[:MAX_CONTENT_CHARS]


def parse_extracted_task(ai_text: str) -> ExtractedTask:
    try:
        parsed = json.loads(strip_code_fence(ai_text))
    except json.JSONDecodeError as e:
        raise ExtractionError("Failed to parse AI response") from e
    if not isinstance(parsed, dict):
        raise ExtractionError("Failed to parse AI response")

    if isinstance(parsed.get("title"), str):
        parsed["title"] = parsed["title"].strip()[:100]
    raw_tags = parsed.get("tags")
    if isinstance(raw_tags, str):
        raw_tags = [raw_tags]
    elif not isinstance(raw_tags, list):
        raw_tags = []
    tags = [t.strip().lower() for t in raw_tags if isinstance(t, str) and t.strip()]
    # The "ai" tag marks every extracted task
    parsed["tags"] = [t for t in tags if t != "ai"][:3] + ["ai"]

    try:
        return ExtractedTask.model_validate(parsed)
    except ValidationError as e:
        raise ExtractionError("The AI model returned an invalid task.") from e


async def extract_task_from_url(
    url: str,
    client: anthropic.AsyncAnthropic,
    http_client: httpx.AsyncClient,
    model: str = "claude-sonnet-4-5",
    today: Optional[str] = None,
) -> ExtractedTask:
    if not re.match(r"^https?://", url):
        raise ExtractionError("Please provide a valid http(s) URL.")

    content = await fetch_page_text(url, http_client)
    prompt = EXTRACT_TASK_PROMPT.format(
        today=today or datetime.now().strftime("%B %d, %Y"),
        url=url,
        content=content,
    )

    try:
        response = await client.messages.create(
            model=model,
            max_tokens=1024,
            messages=[{"role": "user", "content": prompt}],
        )
    except anthropic.APIError as e:
        log.error("extract_api_error", url=url, error=str(e))
        raise ExtractionError(UNEXPECTED_MESSAGE) from e

    text_blocks = [block for block in response.content or [] if getattr(block, "type", None) == "text"]
    if not text_blocks:
        raise ExtractionError("The AI model did not return any output.")

    ai_text = text_blocks[0].text
    log.debug("extract_ai_response", text=ai_text)
    return parse_extracted_task(ai_text)

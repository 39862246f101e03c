"""Normalization of scraped data through a text-generation backend.

Every operation sends one chat completion and, when JSON is expected, pulls
a JSON object out of the reply: first from a fenced code block, otherwise
from the first ``{`` to the last ``}``. A reply that still does not parse is
returned as ``{"error": ..., "content": <raw reply>}`` instead of raising.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from automation_service.errors import InfrastructureError
from automation_service.normalization.llm import TextGenerator

logger = logging.getLogger(__name__)

DEFAULT_TASK = "Extract and normalize the key information from this data"
MAX_HTML_CHARS = 100_000

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n(.+?)\n\s*```", re.DOTALL)
_BRACED_OBJECT = re.compile(r"(\{.*\})", re.DOTALL)

_INSTRUCTIONS_PROMPT = """
You are an expert in browser automation. Your task is to generate structured instructions
for automating web interactions based on the user's description.

Return a JSON object with the following structure:
{
  "steps": [
    {
      "type": "navigate" | "click" | "input" | "extract" | "wait" | "condition",
      "description": "Human-readable description of this step",
      "selector": "CSS selector for the element" (if applicable),
      "value": "Value to input" (if applicable),
      "waitFor": "Condition to wait for" (if applicable),
      "extractAs": "Name for extracted data" (if applicable)
    }
  ],
  "expectedOutput": {
    "description": "Description of the expected output",
    "format": "json" | "text" | "image"
  }
}
""".strip()

_ANALYZE_PROMPT = """
You are a web scraping expert. Analyze the provided HTML and identify key data elements
that could be extracted. Focus on:
1. Main content areas
2. Data tables
3. Lists of items
4. Key-value pairs
5. Navigation elements

For each identified element, provide:
1. A description of the data
2. The CSS selector to target it
3. The type of data (text, attribute, etc.)

Return your analysis as a structured JSON object.
""".strip()


def extract_json(content: str) -> str:
    """Locate the JSON payload inside a model reply."""
    match = _FENCED_BLOCK.search(content) or _BRACED_OBJECT.search(content)
    return match.group(1) if match else content


def parse_json_reply(content: str, *, failure_message: str) -> Any:
    try:
        return json.loads(extract_json(content))
    except json.JSONDecodeError as exc:
        logger.warning("normalize event=json_parse_failed reason=%s", exc)
        return {"error": failure_message, "content": content}


def build_process_prompt(task: str, output_format: str, schema: Any = None) -> str:
    prompt = "You are a data extraction and normalization assistant. "
    prompt += f"Your task is to: {task}. "
    if output_format == "json" and schema:
        prompt += (
            "Return the data in JSON format according to this schema: "
            f"{json.dumps(schema)}"
        )
    elif output_format == "json":
        prompt += "Return the data in a clean, normalized JSON format."
    else:
        prompt += f"Return the data in {output_format} format."
    return prompt


class NormalizationAdapter:
    """Async facade over a blocking ``TextGenerator``."""

    def __init__(self, generator: TextGenerator | None, *, timeout_s: float = 60.0) -> None:
        self.generator = generator
        self.timeout_s = timeout_s

    @property
    def is_configured(self) -> bool:
        return self.generator is not None

    async def process_data(
        self,
        raw_data: Any,
        *,
        task: str | None = None,
        output_format: str | None = None,
        schema: Any = None,
    ) -> Any:
        output_format = output_format or "json"
        system_prompt = build_process_prompt(task or DEFAULT_TASK, output_format, schema)
        content = await self._complete(
            system_prompt, json.dumps(raw_data, default=str), temperature=0.3
        )
        if output_format == "json":
            return parse_json_reply(content, failure_message="Failed to parse JSON response")
        return {"content": content}

    async def generate_automation_instructions(self, task_description: str) -> Any:
        content = await self._complete(_INSTRUCTIONS_PROMPT, task_description, temperature=0.5)
        return parse_json_reply(
            content, failure_message="Failed to parse automation instructions"
        )

    async def analyze_webpage(self, html: str, url: str) -> Any:
        if len(html) > MAX_HTML_CHARS:
            html = html[:MAX_HTML_CHARS] + "..."
        content = await self._complete(
            _ANALYZE_PROMPT, f"URL: {url}\n\nHTML: {html}", temperature=0.3
        )
        return parse_json_reply(content, failure_message="Failed to parse webpage analysis")

    async def _complete(self, system_prompt: str, user_prompt: str, *, temperature: float) -> str:
        if self.generator is None:
            raise InfrastructureError(
                "Text generation is not configured. Set OPENAI_API_KEY or "
                "AUTOMATION_OPENAI_API_KEY."
            )
        # The generator blocks on HTTP; keep it off the event loop.
        return await asyncio.to_thread(
            self.generator.complete,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=temperature,
            timeout_s=self.timeout_s,
        )

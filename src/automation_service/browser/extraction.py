"""Declarative data extraction from a Playwright page."""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

ExtractionType = Literal["text", "html", "attribute"]


class SelectorSpec(BaseModel):
    """One named field to pull out of the page."""

    model_config = ConfigDict(extra="ignore")

    name: str
    selector: str
    type: ExtractionType = "text"
    attribute: str | None = None
    multiple: bool = False


async def read_element(element: Any, spec: SelectorSpec) -> str | None:
    """Read text, inner HTML or an attribute; text is the fallback."""
    if spec.type == "html":
        return (await element.inner_html()).strip()
    if spec.type == "attribute" and spec.attribute:
        return await element.get_attribute(spec.attribute)
    text = await element.text_content()
    return text.strip() if text is not None else ""


async def extract_field(page: Any, spec: SelectorSpec) -> Any:
    if spec.multiple:
        elements = await page.query_selector_all(spec.selector)
        return [await read_element(element, spec) for element in elements]

    # A missing or unreadable single element is null, not an error.
    try:
        element = await page.query_selector(spec.selector)
        if element is None:
            return None
        return await read_element(element, spec)
    except Exception as exc:  # noqa: BLE001
        logger.debug(
            "extract event=single_field_unreadable field=%s selector=%s reason=%s",
            spec.name,
            spec.selector,
            exc,
        )
        return None


async def extract_record(page: Any, selectors: list[SelectorSpec]) -> dict[str, Any]:
    """Build a flat record keyed by selector name; an empty list gives {}."""
    record: dict[str, Any] = {}
    for spec in selectors:
        record[spec.name] = await extract_field(page, spec)
    logger.info("extract event=completed fields=%d", len(record))
    return record

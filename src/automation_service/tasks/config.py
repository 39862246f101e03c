"""Typed view of the ``task.config`` JSON blob."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from automation_service.browser.driver import LoginCredentials
from automation_service.browser.extraction import SelectorSpec


class TaskConfig(BaseModel):
    """Accepts the camelCase keys clients send; unknown keys are kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    selectors: list[SelectorSpec] = Field(default_factory=list)
    credentials: LoginCredentials | None = None
    process_with_ai: bool = Field(default=False, alias="processWithAI")
    ai_task: str | None = Field(default=None, alias="aiTask")
    output_format: str = Field(default="json", alias="outputFormat")
    output_schema: Any = Field(default=None, alias="outputSchema")
    take_screenshot: bool = Field(default=False, alias="takeScreenshot")
    full_page_screenshot: bool = Field(default=False, alias="fullPageScreenshot")
    user_data_key: str | None = Field(default=None, alias="userDataKey")

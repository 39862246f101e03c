"""Request bodies for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CreateTaskRequest(BaseModel):
    """Body for POST /tasks. Required fields are checked by the orchestrator."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    description: str | None = None
    url: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime | None = None


class ExecuteTaskResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    task_id: str = Field(alias="taskId")


class ProcessOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    task: str | None = None
    format: str | None = None
    output_schema: Any = Field(default=None, alias="schema")


class ProcessDataRequest(BaseModel):
    data: Any = None
    options: ProcessOptions = Field(default_factory=ProcessOptions)


class GenerateInstructionsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_description: str | None = Field(default=None, alias="taskDescription")


class AnalyzeWebpageRequest(BaseModel):
    html: str | None = None
    url: str | None = None

"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class BackgroundStats(BaseModel):
    """Counters of the background task runner."""

    model_config = ConfigDict(extra="forbid")
    pending: int
    completed: int
    failed: int


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    cache_entries: dict[str, int]
    background: BackgroundStats


class TaskItem(BaseModel):
    """One offered task row."""

    model_config = ConfigDict(extra="forbid")
    index: int
    data: list[str]
    header: list[str]
    targetsRemaining: list[str] | None = None  # noqa: N815


class TaskListResponse(BaseModel):
    """Response model for GET /tasks."""

    model_config = ConfigDict(extra="forbid")
    items: list[TaskItem]
    total: int
    page: int
    pageSize: int  # noqa: N815

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field

CheckStatus = Literal["passed", "improve", "error"]


class AnalyzeRequest(BaseModel):
    domain: str = Field(..., min_length=1)
    force_refresh: bool = Field(False)
    # Treat https://<hostname> as reachable without probing variants.
    skip_protocol_checks: bool = Field(False)


class ResolvedSite(BaseModel):
    model_config = ConfigDict(frozen=True)

    hostname: str
    accessible_url: str
    uses_https: bool
    uses_www: bool
    redirect_count: int = Field(0, ge=0)


@dataclass(frozen=True)
class FetchedPage:
    url: str
    html: str
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status_code: int | None = None
    strategy: str = "retrying"
    # Wall time of the strategy call that produced the page.
    elapsed_s: float | None = None


class CheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    check_id: str
    status: CheckStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    message: str = ""


class ReportScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed_count: int
    improve_count: int
    error_count: int
    percent: int


class Report(BaseModel):
    model_config = ConfigDict(frozen=True)

    hostname: str
    resolved_site: ResolvedSite
    generated_at: str
    results: dict[str, CheckResult]
    score: ReportScore
    timings_ms: dict[str, int] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


class ApiKey(BaseModel):
    service_name: str
    key_material: str
    usage_count: int = 0
    active: bool = True

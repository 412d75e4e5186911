from __future__ import annotations

from pydantic import BaseModel, Field


class DeploymentRecordOut(BaseModel):
    id: int
    service_name: str
    version: str
    start_time: str
    end_time: str | None = None
    success: bool | None = Field(None, description="None while the deployment is in progress")
    duration: float | None = Field(None, description="Seconds")
    failure_reason: str | None = None
    rollback: bool = False


class ServiceStatsOut(BaseModel):
    service: str
    success_rate: float = Field(..., ge=0, le=1)
    average_deployment_time_s: float | None = None
    rollback_count: int = Field(0, ge=0)


class ServiceSummaryOut(ServiceStatsOut):
    last_deployment: DeploymentRecordOut | None = None


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    service_name: str | None = None
    version: str | None = None
    message: str

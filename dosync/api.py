from __future__ import annotations

import secrets
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import __version__
from .api_models import DeploymentRecordOut, EventOut, ServiceStatsOut, ServiceSummaryOut
from .metrics import MetricsCollector
from .settings import Settings


def create_app(metrics: MetricsCollector, settings: Settings) -> FastAPI:
    """Read-only dashboard API over the deployment metrics."""
    app = FastAPI(title="DOSync dashboard", version=__version__)
    security = HTTPBasic()

    def current_user(credentials: HTTPBasicCredentials = Depends(security)) -> str:
        password = settings.dashboard_password or ""
        ok_user = secrets.compare_digest(credentials.username, settings.dashboard_user)
        ok_pass = secrets.compare_digest(credentials.password, password)
        if not (password and ok_user and ok_pass):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy", "version": __version__}

    @app.get("/api/services", response_model=list[ServiceSummaryOut])
    def services(user: str = Depends(current_user)):
        out = []
        for name in metrics.services_with_metrics():
            last = metrics.deployment_records(name, limit=1)
            out.append({**metrics.stats(name), "last_deployment": asdict(last[0]) if last else None})
        return out

    @app.get("/api/services/{name}/deployments", response_model=list[DeploymentRecordOut])
    def deployments(name: str, limit: int = Query(50, ge=1, le=1000), user: str = Depends(current_user)):
        if name not in metrics.services_with_metrics():
            raise HTTPException(status_code=404, detail=f"no deployments recorded for {name}")
        return [asdict(r) for r in metrics.deployment_records(name, limit=limit)]

    @app.get("/api/services/{name}/stats", response_model=ServiceStatsOut)
    def stats(name: str, user: str = Depends(current_user)):
        if name not in metrics.services_with_metrics():
            raise HTTPException(status_code=404, detail=f"no deployments recorded for {name}")
        return metrics.stats(name)

    @app.get("/api/events", response_model=list[EventOut])
    def events(limit: int = Query(100, ge=1, le=1000), user: str = Depends(current_user)):
        return [asdict(e) for e in metrics.latest_events(limit)]

    return app

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from agents.tana_agent.config import TanaSettings
from agents.tana_agent.errors import AgentBusyError, ConfigurationInvalidError
from agents.tana_agent.service import TanaAgentService
from routers.auth import ensure_request_authorized


logger = logging.getLogger("agent_runner.tana_router")


class RunRequest(BaseModel):
    """Single-shot update: either ``target`` + ``status``, or a column."""

    link: Optional[str] = None
    target: Optional[str] = None
    status: Optional[str] = None
    field: Optional[str] = None
    column: Optional[str] = None
    column_testid: Optional[str] = None
    card_selector: Optional[str] = None
    status_toggle: Optional[str] = None
    button_text: Optional[str] = None
    button_selector: Optional[str] = None
    headless: bool = True
    save_state: Optional[str] = None


class WatchRequest(BaseModel):
    link: Optional[str] = None
    columns: Optional[str] = None
    poll_interval: Optional[int] = None
    button_text: Optional[str] = None
    button_selector: Optional[str] = None
    webhook_url: Optional[str] = None
    headless: bool = True


def create_tana_router(
    service: TanaAgentService,
    job_secret: str,
    settings_factory: Callable[[Dict[str, Any]], TanaSettings],
) -> APIRouter:
    """Create HTTP router for the Tana kanban agent."""
    router = APIRouter(prefix="/tana-agent", tags=["tana-agent"])

    def ensure_auth(request: Request) -> None:
        ensure_request_authorized(request, job_secret, logger)

    def build(overrides: Dict[str, Any]) -> TanaSettings:
        try:
            return settings_factory(overrides)
        except ConfigurationInvalidError as err:
            logger.warning("Invalid tana-agent request: %s", err)
            raise HTTPException(status_code=400, detail=str(err)) from err

    @router.get("/status")
    def status(request: Request):
        ensure_auth(request)
        return service.get_status()

    @router.get("/events")
    def events(request: Request, limit: int = 200):
        ensure_auth(request)
        return service.get_events(limit=limit)

    @router.post("/run")
    def run(req: RunRequest, request: Request):
        """Run one update synchronously and return its result."""
        ensure_auth(request)
        settings = build(req.model_dump(exclude_none=True))
        try:
            return service.run_once(settings)
        except AgentBusyError as err:
            raise HTTPException(status_code=409, detail=str(err)) from err
        except Exception as err:
            logger.exception("Failure in /tana-agent/run")
            raise HTTPException(
                status_code=500,
                detail={
                    "message": str(err),
                    "step": getattr(err, "step", ""),
                    "artifact": getattr(err, "artifact", ""),
                },
            ) from err

    @router.post("/watch/start")
    def watch_start(req: WatchRequest, request: Request):
        ensure_auth(request)
        overrides = req.model_dump(exclude_none=True)
        overrides["watch"] = True
        settings = build(overrides)
        try:
            result = service.start_watch(settings)
        except AgentBusyError as err:
            raise HTTPException(status_code=409, detail=str(err)) from err
        logger.info("Watcher started via API (columns=%s)", ",".join(result.get("columns", [])))
        return result

    @router.post("/watch/stop")
    def watch_stop(request: Request):
        ensure_auth(request)
        result = service.stop_watch()
        logger.info("Watcher stop requested via API (stopped=%s)", result.get("stopped"))
        return result

    return router

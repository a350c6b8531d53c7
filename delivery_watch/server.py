"""HTTP control surface for the monitor service."""
from __future__ import annotations

import hmac
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Sequence

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from delivery_watch.common.json_logger import JsonLogger, log_event
from delivery_watch.monitor.service import MonitorService, ServiceConflict


def envelope(
    *,
    success: bool,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    return {"success": success, "message": message, "error": error, "data": data}


def _bearer_guard(tokens: Sequence[str]):
    allowed = [token for token in tokens if token]

    async def _verify(authorization: Optional[str] = Header(default=None)) -> None:
        scheme, _, presented = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not presented:
            raise HTTPException(status_code=401, detail="missing bearer token")
        if not any(hmac.compare_digest(presented.strip(), token) for token in allowed):
            raise HTTPException(status_code=401, detail="invalid bearer token")

    return _verify


def create_app(
    service: MonitorService,
    *,
    tokens: Sequence[str],
    base_path: str = "/api",
    logger: Optional[JsonLogger] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await service.open()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(title="delivery-watch control", lifespan=lifespan)
    router = APIRouter(prefix=base_path.rstrip("/"), dependencies=[Depends(_bearer_guard(tokens))])

    def _audit(action: str, request: Request) -> None:
        if logger is not None:
            log_event(
                logger=logger,
                phase="control",
                message="control request",
                action=action,
                client=request.client.host if request.client else None,
            )

    @app.exception_handler(HTTPException)
    async def _http_error(_: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(success=False, message="request rejected", error=str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @router.post("/task/start")
    async def start_task(request: Request) -> Dict[str, Any]:
        _audit("start", request)
        try:
            status = await service.start()
        except ServiceConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return envelope(success=True, message="monitor started", data=status)

    @router.post("/task/stop")
    async def stop_task(request: Request) -> Dict[str, Any]:
        _audit("stop", request)
        try:
            status = await service.stop()
        except ServiceConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return envelope(success=True, message="monitor stopped", data=status)

    @router.post("/task/run")
    async def run_task(request: Request) -> Dict[str, Any]:
        _audit("run", request)
        try:
            summary = await service.run_once()
        except ServiceConflict as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return envelope(success=True, message=f"cycle {summary['outcome']}", data=summary)

    @router.get("/status")
    async def get_status() -> Dict[str, Any]:
        return envelope(success=True, message="ok", data=service.status())

    app.include_router(router)
    return app

import json
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.analytics import router as analytics_router
from apis.notifications import router as notifications_router
from apis.realtime import router as realtime_router
from beacon.config import API_BASE, VERSION, cfg
from beacon.db import DB
from beacon.events import log_event, E
from beacon.hub import hub
from beacon.log import get_logger, trace_ctx

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """确保中文与西语字符不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="BGE Beacon Receiver",
    description="客户端事件批量接收与实时通知服务",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cfg.get("cors_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_header(request: Request, call_next):
    with trace_ctx(request.headers.get("X-Trace-Id")) as tid:
        response = await call_next(request)
    response.headers["X-Version"] = VERSION
    response.headers["X-Trace-Id"] = tid
    return response


api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(analytics_router)
api_router.include_router(notifications_router)

app.include_router(api_router)
app.include_router(realtime_router)


@app.get(f"{API_BASE}/health", tags=["默认"])
async def health():
    return {"code": 0, "success": True, "data": {"version": VERSION, "connections": hub.connections}}


@app.on_event("startup")
async def ensure_tables():
    DB.create_tables()
    log_event(logger, E.SYSTEM_STARTUP, component="receiver", version=VERSION)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "web:app",
        host=str(cfg.get("server.host", "0.0.0.0")),
        port=int(cfg.get("server.port", 8001)),
        reload=False,
    )

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.auth import router as auth_router
from .routers.gemini import router as gemini_router
from .routers.messages import router as messages_router
from .routers.realtime import router as realtime_router
from ..observability.metrics import metrics_middleware_factory
from ..services.gemini_proxy import get_generative_proxy
from ..services.presence import get_chat_engine

load_dotenv()  # Load environment variables from .env if present (GEMINI_API_KEY, SESSION_SECRET, etc.)

logging.basicConfig(level=logging.INFO)
logging.getLogger("chatline.realtime").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Load the compact codec once, before the first request
    proxy = get_generative_proxy()
    logging.getLogger("chatline.llm").info(
        "gemini_proxy_ready",
        extra={"model": proxy.config.model, "compact_codec": proxy.codec is not None},
    )
    yield
    await get_chat_engine().drain()


app = FastAPI(title="Chatline API", version="0.1.0", lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

for _router in (auth_router, gemini_router, messages_router, realtime_router):
    app.include_router(_router)
    # Same routes under /api, where the browser client calls them
    app.include_router(_router, prefix="/api")


def _health_payload() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "realtime_connections": len(get_chat_engine().registry),
        },
    }


@app.get("/")
def root():
    return {"name": "Chatline API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health_payload()


@app.get("/api/health")
def api_health():
    return _health_payload()


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)

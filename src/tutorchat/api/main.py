from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
import os
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from .routers.ws import router as ws_router
from ..core.config import ChatGatewayConfig
from ..infrastructure.chat_store import HistoryStore, get_history_store
from ..infrastructure.goal_directory import GoalDirectory, get_goal_directory
from ..observability.metrics import metrics_middleware_factory
from ..security.auth import CredentialVerifier, JwtConfig, get_user_directory
from ..services.gateway import ChatGateway
from ..services.tutor_ai import ResponseGenerator, build_response_generator

load_dotenv()  # Load environment variables from .env if present (JWT_SECRET, GEMINI_API_KEY, etc.)

logger = logging.getLogger("tutorchat.api")

API_TITLE = "Tutor Chat Gateway"
API_VERSION = "0.1.0"


def _cors_origins() -> list[str]:
    raw = os.getenv("TUTORCHAT_CORS_ORIGINS")
    if not raw:
        return ["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app(
    *,
    verifier: Optional[CredentialVerifier] = None,
    store: Optional[HistoryStore] = None,
    generator: Optional[ResponseGenerator] = None,
    goals: Optional[GoalDirectory] = None,
    config: Optional[ChatGatewayConfig] = None,
) -> FastAPI:
    config = config or ChatGatewayConfig.from_env()
    verifier = verifier or CredentialVerifier(JwtConfig.from_env(), users=get_user_directory())
    store = store or get_history_store()
    goals = goals if goals is not None else get_goal_directory()
    generator = generator or build_response_generator(config)

    app = FastAPI(title=API_TITLE, version=API_VERSION)
    app.state.config = config
    app.state.verifier = verifier
    app.state.store = store
    app.state.goals = goals
    app.state.gateway = ChatGateway(verifier, store, generator, goals=goals, config=config)

    # Observability: request latency histogram
    app.middleware("http")(metrics_middleware_factory())

    app.include_router(chat_router)
    app.include_router(chat_router, prefix="/api")
    app.include_router(ws_router)

    # CORS (for the web client dev server)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"name": API_TITLE, "version": API_VERSION}

    @app.get("/health")
    def health(request: Request):
        gateway: ChatGateway = request.app.state.gateway
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "components": {
                "api": "ok",
                "store": type(request.app.state.store).__name__,
                "goals": type(request.app.state.goals).__name__,
            },
            "activeConnections": len(gateway.registry),
        }

    @app.get("/metrics")
    def metrics() -> Response:
        # Expose Prometheus metrics
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    logger.info("app_created", extra={"store": type(store).__name__})
    return app


app = create_app()

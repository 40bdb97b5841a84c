"""FastAPI application for the decision loop.

Exposes the loop flows over REST. The database connection and the
service built on it are a lazily-initialized singleton per app,
created on first request under an asyncio.Lock and closed on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite
from fastapi import FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flywheel import __version__
from flywheel.errors import FlywheelError
from flywheel.persistence.database import close_db, init_db
from flywheel.persistence.runs import RunStore
from flywheel.persistence.stories import StoryStore
from flywheel.schemas.api import (
    AutomationExecuteRequest,
    AutomationRequest,
    AutomationResponse,
    AutorunRequest,
    AutorunResponse,
    LearningRequest,
    LearningResponse,
    OptimizerRequest,
    OptimizerResponse,
    OrchestratorRequest,
    OrchestratorResponse,
    OrchestratorRunRequest,
    OutcomeAgentRequest,
    OutcomeAgentResponse,
    OutcomeCloseRequest,
    OutcomeCloseResponse,
    StrategyLoopRequest,
    StrategyLoopResponse,
)
from flywheel.schemas.enums import AutonomyMode, OptimizationObjective
from flywheel.schemas.upstream import SprintObjective, StoryContext
from flywheel.service import Clock, EconomyLoopService
from flywheel.settings import LoopConfig, load_loop_config

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"

_STORY = "/api/v1/stories/{slug}"


def _error(status_code: int, message: str, request_id: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "request_id": request_id, **extra},
    )


class _ServiceHolder:
    """Init-once holder for the app's database connection and service."""

    def __init__(self, config: LoopConfig, clock: Clock | None) -> None:
        self._config = config
        self._clock = clock
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None
        self._service: EconomyLoopService | None = None

    async def get(self) -> EconomyLoopService:
        if self._service is not None:
            return self._service
        async with self._lock:
            if self._service is None:
                self._db = await init_db(self._config.db_path)
                self._service = EconomyLoopService(
                    RunStore(self._db), StoryStore(self._db), self._config, self._clock,
                )
        return self._service

    async def close(self) -> None:
        async with self._lock:
            if self._db is not None:
                await close_db(self._db)
            self._db = None
            self._service = None


def create_app(config: LoopConfig | None = None, clock: Clock | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Loop configuration. Defaults to :func:`load_loop_config`.
        clock: Source of ``now`` passed to the service.

    Returns:
        The configured FastAPI app.
    """
    holder = _ServiceHolder(config or load_loop_config(), clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await holder.close()

    app = FastAPI(
        title="Flywheel",
        description="Autonomous creator-economy decision loop",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError,
    ) -> JSONResponse:
        return _error(
            400,
            "Invalid request",
            getattr(request.state, "request_id", ""),
            details=jsonable_encoder(exc.errors()),
        )

    async def _run(
        request: Request,
        message: str,
        call: Callable[[EconomyLoopService], Awaitable[Any]],
    ) -> Any:
        """Invoke a service call and map errors to JSON responses."""
        request_id = request.state.request_id
        try:
            return await call(await holder.get())
        except FlywheelError as exc:
            return _error(exc.status_code, exc.message, request_id)
        except Exception:
            logger.exception("%s (request %s)", message, request_id)
            return _error(500, message, request_id)

    # ── Health ───────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    # ── Stories and runs ─────────────────────────────────────────

    @app.put(_STORY + "/context")
    async def put_context(request: Request, slug: str, context: StoryContext) -> Any:
        """Store the latest upstream reports for a story."""

        async def call(service: EconomyLoopService) -> dict:
            stored = await service.upsert_context(slug, context)
            return {"story": stored.model_dump(mode="json")}

        return await _run(request, "Failed to store story context", call)

    @app.get(_STORY + "/economy/runs")
    async def list_runs(
        request: Request, slug: str, limit: int = Query(default=20, ge=1, le=100),
    ) -> Any:
        async def call(service: EconomyLoopService) -> dict:
            runs = await service.list_runs(slug, limit)
            return {"runs": [run.model_dump(mode="json") for run in runs]}

        return await _run(request, "Failed to list creator economy runs", call)

    @app.post(_STORY + "/economy/runs/{run_id}/outcome", response_model=OutcomeCloseResponse)
    async def close_run(
        request: Request,
        slug: str,
        run_id: str,
        body: OutcomeCloseRequest | None = None,
    ) -> Any:
        body = body or OutcomeCloseRequest()
        return await _run(
            request,
            "Failed to update creator economy run outcome",
            lambda service: service.close_run_outcome(slug, run_id, body),
        )

    # ── Orchestrator ─────────────────────────────────────────────

    @app.get(_STORY + "/economy/orchestrator", response_model=OrchestratorResponse)
    async def get_orchestrator(
        request: Request,
        slug: str,
        sprint_objective: SprintObjective | None = None,
        horizon_days: int | None = Query(default=None, ge=3, le=30),
        limit: int | None = Query(default=None, ge=1, le=20),
    ) -> Any:
        body = OrchestratorRequest(
            sprint_objective=sprint_objective, horizon_days=horizon_days, limit=limit,
        )
        return await _run(
            request,
            "Failed to load creator economy orchestrator",
            lambda service: service.orchestrator(slug, body),
        )

    @app.post(_STORY + "/economy/orchestrator", response_model=OrchestratorResponse)
    async def post_orchestrator(
        request: Request,
        slug: str,
        body: OrchestratorRunRequest | None = None,
        x_user_id: str | None = Header(default=None),
    ) -> Any:
        body = body or OrchestratorRunRequest()
        return await _run(
            request,
            "Failed to build creator economy operating plan",
            lambda service: service.create_orchestrator_run(slug, body, x_user_id),
        )

    # ── Automation ───────────────────────────────────────────────

    @app.get(_STORY + "/economy/automation", response_model=AutomationResponse)
    async def get_automation(
        request: Request,
        slug: str,
        sprint_objective: SprintObjective | None = None,
        horizon_days: int | None = Query(default=None, ge=3, le=30),
        limit: int | None = Query(default=None, ge=1, le=20),
    ) -> Any:
        body = AutomationRequest(
            sprint_objective=sprint_objective, horizon_days=horizon_days, limit=limit,
        )
        return await _run(
            request,
            "Failed to load creator economy automation plan",
            lambda service: service.automation(slug, body),
        )

    @app.post(_STORY + "/economy/automation", response_model=AutomationResponse)
    async def post_automation(
        request: Request,
        slug: str,
        body: AutomationExecuteRequest,
        x_user_id: str | None = Header(default=None),
    ) -> Any:
        return await _run(
            request,
            "Failed to execute creator economy automation recommendation",
            lambda service: service.execute_automation(slug, body, x_user_id),
        )

    # ── Optimizer ────────────────────────────────────────────────

    @app.get(_STORY + "/economy/optimizer", response_model=OptimizerResponse)
    async def get_optimizer(
        request: Request,
        slug: str,
        objective: OptimizationObjective | None = None,
        mode: AutonomyMode = AutonomyMode.ASSIST,
        sprint_objective: SprintObjective | None = None,
        horizon_days: int | None = Query(default=None, ge=3, le=30),
        limit: int | None = Query(default=None, ge=1, le=30),
    ) -> Any:
        body = OptimizerRequest(
            objective=objective,
            mode=mode,
            sprint_objective=sprint_objective,
            horizon_days=horizon_days,
            limit=limit,
        )
        return await _run(
            request,
            "Failed to load creator economy optimizer",
            lambda service: service.optimizer(slug, body),
        )

    @app.post(_STORY + "/economy/optimizer", response_model=OptimizerResponse)
    async def post_optimizer(
        request: Request,
        slug: str,
        body: OptimizerRequest | None = None,
    ) -> Any:
        body = body or OptimizerRequest()
        return await _run(
            request,
            "Failed to simulate creator economy optimizer cycle",
            lambda service: service.optimizer(slug, body),
        )

    # ── Policy learning ──────────────────────────────────────────

    @app.get(_STORY + "/economy/policy-learning", response_model=LearningResponse)
    async def policy_learning(
        request: Request,
        slug: str,
        mode: AutonomyMode = AutonomyMode.ASSIST,
        sprint_objective: SprintObjective | None = None,
        horizon_days: int | None = Query(default=None, ge=3, le=30),
        limit: int | None = Query(default=None, ge=1, le=40),
    ) -> Any:
        body = LearningRequest(
            mode=mode, sprint_objective=sprint_objective, horizon_days=horizon_days, limit=limit,
        )
        return await _run(
            request,
            "Failed to load creator economy policy learning",
            lambda service: service.learning(slug, body),
        )

    # ── Autorun ──────────────────────────────────────────────────

    @app.post(_STORY + "/economy/autorun", response_model=AutorunResponse)
    async def autorun(
        request: Request,
        slug: str,
        body: AutorunRequest | None = None,
        x_user_id: str | None = Header(default=None),
    ) -> Any:
        body = body or AutorunRequest()
        return await _run(
            request,
            "Failed to execute creator economy autorun cycle",
            lambda service: service.autorun(slug, body, x_user_id),
        )

    # ── Strategy loop ────────────────────────────────────────────

    @app.get(_STORY + "/economy/strategy-loop", response_model=StrategyLoopResponse)
    async def get_strategy_loop(
        request: Request,
        slug: str,
        objective: OptimizationObjective | None = None,
        mode: AutonomyMode = AutonomyMode.ASSIST,
        sprint_objective: SprintObjective | None = None,
        horizon_days: int | None = Query(default=None, ge=3, le=30),
        cadence_hours: int | None = Query(default=None, ge=6, le=24),
        auto_optimize: bool | None = None,
        limit: int | None = Query(default=None, ge=1, le=30),
    ) -> Any:
        body = StrategyLoopRequest(
            objective=objective,
            mode=mode,
            sprint_objective=sprint_objective,
            horizon_days=horizon_days,
            cadence_hours=cadence_hours,
            auto_optimize=auto_optimize,
            limit=limit,
        )
        return await _run(
            request,
            "Failed to load creator economy strategy loop",
            lambda service: service.strategy_loop(slug, body),
        )

    @app.post(_STORY + "/economy/strategy-loop", response_model=StrategyLoopResponse)
    async def post_strategy_loop(
        request: Request,
        slug: str,
        body: StrategyLoopRequest | None = None,
        x_user_id: str | None = Header(default=None),
    ) -> Any:
        body = body or StrategyLoopRequest()
        return await _run(
            request,
            "Failed to simulate creator economy strategy loop",
            lambda service: service.strategy_loop(slug, body, x_user_id),
        )

    # ── Outcome agent ────────────────────────────────────────────

    @app.get(_STORY + "/economy/outcome-agent", response_model=OutcomeAgentResponse)
    async def get_outcome_agent(
        request: Request,
        slug: str,
        mode: AutonomyMode = AutonomyMode.ASSIST,
        sprint_objective: SprintObjective | None = None,
        horizon_days: int | None = Query(default=None, ge=3, le=30),
        limit: int | None = Query(default=None, ge=1, le=40),
        stale_after_hours: float | None = Query(default=None, ge=6, le=240),
        max_runs: int | None = Query(default=None, ge=1, le=10),
    ) -> Any:
        body = OutcomeAgentRequest(
            mode=mode,
            sprint_objective=sprint_objective,
            horizon_days=horizon_days,
            limit=limit,
            stale_after_hours=stale_after_hours,
            max_runs=max_runs,
        )
        return await _run(
            request,
            "Failed to load creator economy outcome agent",
            lambda service: service.outcome_agent(slug, body),
        )

    @app.post(_STORY + "/economy/outcome-agent", response_model=OutcomeAgentResponse)
    async def post_outcome_agent(
        request: Request,
        slug: str,
        body: OutcomeAgentRequest | None = None,
    ) -> Any:
        body = body or OutcomeAgentRequest()
        return await _run(
            request,
            "Failed to execute creator economy outcome agent",
            lambda service: service.outcome_agent(slug, body, execute=True),
        )

    return app

"""Decision loop service.

Orchestrates one invocation of each loop flow: read the story and its
run history, run the pure engine stages, commit at most one bounded
batch of writes, and recompute the reports from the new history in
memory.

Invocations for the same story are serialized in-process by a
per-story asyncio.Lock. Across processes the batch is committed with a
compare-and-swap on the story's decision-cycle marker.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from flywheel.engine.automation import build_automation_plan, clamp_horizon
from flywheel.engine.healing import apply_self_healing_patch
from flywheel.engine.metrics import (
    build_operating_plan,
    build_run_delta_report,
    previous_run_metrics,
)
from flywheel.engine.outcome_agent import (
    build_outcome_agent_plan,
    closing_note,
    select_outcome_candidates,
)
from flywheel.engine.pipeline import (
    PolicySnapshot,
    StrategyState,
    build_healing_report,
    build_optimization_snapshot,
    build_policy_snapshot,
    build_strategy_state,
    govern,
)
from flywheel.engine.policy import select_execution_items
from flywheel.errors import (
    FeatureDisabledError,
    InvalidRequestError,
    RecommendationNotFoundError,
    RunNotFoundError,
    StoryNotFoundError,
)
from flywheel.persistence.runs import RunStore
from flywheel.persistence.stories import StoryStore
from flywheel.schemas.api import (
    AutomationExecuteRequest,
    AutomationRequest,
    AutomationResponse,
    AutorunRequest,
    AutorunResponse,
    ClosedRun,
    ExecutedAction,
    LearningRequest,
    LearningResponse,
    MerchAttachment,
    OptimizerRequest,
    OptimizerResponse,
    OrchestratorRequest,
    OrchestratorResponse,
    OrchestratorRunRequest,
    OutcomeAgentRequest,
    OutcomeAgentResponse,
    OutcomeCloseRequest,
    OutcomeCloseResponse,
    OwnerOverride,
    PreviewAction,
    SkippedAction,
    SprintSeed,
    StrategyLoopRequest,
    StrategyLoopResponse,
)
from flywheel.schemas.automation import AutomationExecution
from flywheel.schemas.enums import AutonomyMode, OptimizationObjective, RunStatus
from flywheel.schemas.metrics import MetricsSnapshot
from flywheel.schemas.outcome import OutcomeAgentPlan
from flywheel.schemas.policy import Backlog, BacklogItem, BacklogItemStatus, DecisionPolicy
from flywheel.schemas.runs import (
    AutomationRunPlan,
    AutorunRunPlan,
    ManualRunPlan,
    Run,
    RunPlan,
    RunSummary,
    SelfHealingRunPlan,
    WindowLoopRunPlan,
)
from flywheel.schemas.strategy import WindowGateStatus
from flywheel.schemas.upstream import (
    DistributionChannel,
    RoleAgentId,
    RoleBoard,
    SprintObjective,
    StoryContext,
)
from flywheel.settings import LoopConfig, load_loop_config

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _skipped(backlog: Backlog) -> list[SkippedAction]:
    return [
        SkippedAction(
            recommendation_id=item.recommendation_id, title=item.title, reason=item.reason,
        )
        for item in backlog.items
        if item.status != BacklogItemStatus.READY
    ]


def _executed(item: BacklogItem, run: Run | None, dry_run: bool) -> ExecutedAction:
    return ExecutedAction(
        recommendation_id=item.recommendation_id,
        title=item.title,
        run_id=run.id if run else None,
        sprint_objective=item.execution.sprint_objective,
        horizon_days=item.execution.horizon_days,
        status="dry_run" if dry_run else "planned",
    )


def _preview(item: BacklogItem) -> PreviewAction:
    return PreviewAction(
        recommendation_id=item.recommendation_id,
        title=item.title,
        priority=item.priority.value,
        status=item.status.value,
        reason=item.reason,
        sprint_objective=item.execution.sprint_objective,
        horizon_days=item.execution.horizon_days,
    )


def _summaries(history: Sequence[Run], limit: int) -> list[RunSummary]:
    return [run.summary() for run in history[:limit]]


class EconomyLoopService:
    """Runs the decision loop flows against a run store.

    Args:
        runs: Run history store.
        stories: Story context store.
        config: Loop configuration. Defaults to :func:`load_loop_config`.
        clock: Source of ``now`` for every invocation.
    """

    def __init__(
        self,
        runs: RunStore,
        stories: StoryStore,
        config: LoopConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._runs = runs
        self._stories = stories
        self._config = config or load_loop_config()
        self._clock = clock or _utcnow
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> LoopConfig:
        return self._config

    # ── Helpers ──────────────────────────────────────────────────

    def _lock(self, story_id: str) -> asyncio.Lock:
        lock = self._locks.get(story_id)
        if lock is None:
            lock = self._locks[story_id] = asyncio.Lock()
        return lock

    def _require(self, feature: str) -> None:
        if not self._config.features.enabled(feature):
            raise FeatureDisabledError(feature)

    async def _context(self, slug: str) -> StoryContext:
        context = await self._stories.get_context(slug)
        if context is None:
            raise StoryNotFoundError(slug)
        return context

    def _seed_board(
        self,
        context: StoryContext,
        seed: SprintSeed,
        overrides: dict[RoleAgentId, str] | None = None,
    ) -> RoleBoard:
        return context.role_board.seeded(
            seed.sprint_objective or self._config.seed_sprint_objective,
            seed.horizon_days or self._config.seed_horizon_days,
            overrides,
        )

    @staticmethod
    def _override_map(
        context: StoryContext, overrides: Sequence[OwnerOverride],
    ) -> dict[RoleAgentId, str]:
        allowed = context.allowed_user_ids
        for override in overrides:
            if override.owner_user_id not in allowed:
                raise InvalidRequestError("Invalid role owner override user")
        return {override.role_id: override.owner_user_id for override in overrides}

    @staticmethod
    def _merch_attachment(
        context: StoryContext,
        sprint_objective: SprintObjective,
        candidate_id: str | None,
        channels: Sequence[DistributionChannel] | None,
        *,
        required: bool = False,
    ) -> MerchAttachment | None:
        """Pick the merch candidate for a sprint, or None when none is attached.

        A named candidate must be in the merch report. Without one the
        top-ranked candidate is used, with its best-fitting channels.
        """
        candidates = {candidate.id: candidate for candidate in context.merch_report.candidates}
        if candidate_id is not None and candidate_id not in candidates:
            raise InvalidRequestError(f"Invalid merch candidate: {candidate_id}")
        if not required and sprint_objective != SprintObjective.LAUNCH_MERCH_PILOT:
            return None

        ranked = context.merch_report.candidates
        candidate = candidates[candidate_id] if candidate_id else (ranked[0] if ranked else None)
        if channels:
            chosen = list(channels)
        else:
            chosen = list(candidate.channel_fit[:3]) if candidate else []
        return MerchAttachment(candidate_id=candidate.id if candidate else None, channels=chosen)

    def _new_run(
        self,
        context: StoryContext,
        user_id: str,
        execution: AutomationExecution,
        plan: RunPlan,
        baseline: MetricsSnapshot,
        now: datetime,
    ) -> Run:
        return Run(
            id=str(uuid.uuid4()),
            story_id=context.story_id,
            created_by_user_id=user_id,
            sprint_objective=execution.sprint_objective,
            horizon_days=execution.horizon_days,
            status=RunStatus.PLANNED,
            plan=plan,
            baseline_metrics=baseline,
            created_at=now,
            updated_at=now,
        )

    def _outcome_plan(
        self, snapshot: PolicySnapshot, history: Sequence[Run], now: datetime,
    ) -> OutcomeAgentPlan | None:
        if not self._config.features.outcome_agent:
            return None
        return build_outcome_agent_plan(
            history,
            snapshot.operating_plan.baseline_metrics,
            snapshot.learning,
            now=now,
            stale_after_hours=self._config.outcome_agent.stale_after_hours,
        )

    # ── Stories and runs ─────────────────────────────────────────

    async def upsert_context(self, slug: str, context: StoryContext) -> StoryContext:
        if context.slug != slug:
            raise InvalidRequestError(
                f"Context slug {context.slug!r} does not match story {slug!r}"
            )
        return await self._stories.upsert_context(context, now=self._clock())

    async def list_runs(self, slug: str, limit: int = 20) -> list[RunSummary]:
        context = await self._context(slug)
        history = await self._runs.list_runs(context.story_id, limit=limit)
        return [run.summary() for run in history]

    async def get_run(self, slug: str, run_id: str) -> Run:
        context = await self._context(slug)
        run = await self._runs.get_run(run_id, context.story_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def close_run_outcome(
        self, slug: str, run_id: str, request: OutcomeCloseRequest,
    ) -> OutcomeCloseResponse:
        """Record a manual outcome for one run.

        Outcome metrics are the story's current metrics, planned against
        the run's own sprint, with any supplied metrics laid on top.
        """
        context = await self._context(slug)
        async with self._lock(context.story_id):
            now = self._clock()
            marker = await self._runs.read_cycle_marker(context.story_id, now=now)
            run = await self._runs.get_run(run_id, context.story_id)
            if run is None:
                raise RunNotFoundError(run_id)

            board = context.role_board.seeded(
                run.sprint_objective, clamp_horizon(run.horizon_days),
            )
            plan = build_operating_plan(
                context, now=now, board=board, previous_metrics=run.baseline_metrics,
            )
            outcome_metrics = plan.baseline_metrics
            if request.metrics is not None:
                outcome_metrics = outcome_metrics.merged_with(request.metrics)

            updated = run.with_outcome(
                now=now,
                status=request.status,
                outcome_metrics=outcome_metrics,
                outcome_decision=request.outcome_decision,
                outcome_notes=request.outcome_notes,
            )
            await self._runs.commit_cycle(
                context.story_id, marker, updated=[updated], now=now,
            )

        return OutcomeCloseResponse(
            run=updated.summary(),
            delta_report=build_run_delta_report(updated),
            operating_plan=plan,
        )

    # ── Orchestrator ─────────────────────────────────────────────

    async def orchestrator(self, slug: str, request: OrchestratorRequest) -> OrchestratorResponse:
        """Current operating plan for a sprint, against the latest run."""
        self._require("orchestrator")
        context = await self._context(slug)
        history = await self._runs.list_runs(
            context.story_id, limit=request.limit or self._config.history_limits.orchestrator,
        )
        board = self._seed_board(context, request)
        plan = build_operating_plan(
            context, now=self._clock(), board=board, previous_metrics=previous_run_metrics(history),
        )
        return OrchestratorResponse(
            operating_plan=plan,
            role_board=board,
            merch=self._merch_attachment(context, board.sprint_objective, None, None),
            history=_summaries(
                history, request.limit or self._config.response_history.orchestrator,
            ),
        )

    async def create_orchestrator_run(
        self, slug: str, request: OrchestratorRunRequest, user_id: str | None = None,
    ) -> OrchestratorResponse:
        """Plan a manual sprint and, unless ``persist`` is off, record it as a run.

        Raises:
            FeatureDisabledError: If the orchestrator is switched off.
            InvalidRequestError: For an override naming a user outside the
                story or a merch candidate missing from the merch report.
            StoryNotFoundError: If the story has no stored context.
            DecisionCycleConflictError: If another cycle committed first.
        """
        self._require("orchestrator")
        context = await self._context(slug)
        overrides = self._override_map(context, request.owner_overrides)
        board = self._seed_board(context, request, overrides)
        merch = self._merch_attachment(
            context,
            board.sprint_objective,
            request.merch_candidate_id,
            request.merch_channels,
            required=request.merch_candidate_id is not None,
        )

        async with self._lock(context.story_id):
            now = self._clock()
            marker = await self._runs.read_cycle_marker(context.story_id, now=now)
            history = await self._runs.list_runs(
                context.story_id, limit=self._config.history_limits.orchestrator,
            )
            plan = build_operating_plan(
                context, now=now, board=board, previous_metrics=previous_run_metrics(history),
            )
            run = None
            if request.persist:
                run = self._new_run(
                    context,
                    user_id or context.owner_user_id,
                    AutomationExecution(
                        sprint_objective=board.sprint_objective, horizon_days=board.horizon_days,
                    ),
                    ManualRunPlan(
                        operating_plan=plan,
                        merch_candidate_id=merch.candidate_id if merch else None,
                        merch_channels=list(merch.channels) if merch else [],
                    ),
                    plan.baseline_metrics,
                    now,
                )
                await self._runs.commit_cycle(context.story_id, marker, created=[run], now=now)
                logger.info("Orchestrator planned run %s for %s", run.id, slug)
                history = [run, *history]

        return OrchestratorResponse(
            operating_plan=plan,
            role_board=board,
            merch=merch,
            run=run.summary() if run else None,
            history=_summaries(history, self._config.response_history.orchestrator),
        )

    # ── Automation ───────────────────────────────────────────────

    async def automation(self, slug: str, request: AutomationRequest) -> AutomationResponse:
        self._require("automation")
        context = await self._context(slug)
        history = await self._runs.list_runs(
            context.story_id, limit=self._config.history_limits.automation,
        )
        now = self._clock()
        board = self._seed_board(context, request)
        plan = build_operating_plan(
            context, now=now, board=board, previous_metrics=previous_run_metrics(history),
        )
        return AutomationResponse(
            automation_plan=build_automation_plan(context, plan, history, now=now, board=board),
            operating_plan=plan,
            role_board=board,
            history=_summaries(history, request.limit or self._config.response_history.automation),
        )

    async def execute_automation(
        self, slug: str, request: AutomationExecuteRequest, user_id: str | None = None,
    ) -> AutomationResponse:
        """Execute one recommendation from the automation plan as a run.

        The recommendation is looked up in the plan built for the request's
        sprint seed. The run follows the recommendation's own sprint and
        horizon; a merch candidate is attached when the recommendation
        requires one or the sprint is a merch pilot.

        Raises:
            FeatureDisabledError: If automation is switched off.
            RecommendationNotFoundError: If the id is not in the current plan.
            InvalidRequestError: For an override naming a user outside the
                story or a merch candidate missing from the merch report.
            StoryNotFoundError: If the story has no stored context.
            DecisionCycleConflictError: If another cycle committed first.
        """
        self._require("automation")
        context = await self._context(slug)
        overrides = self._override_map(context, request.owner_overrides)

        async with self._lock(context.story_id):
            now = self._clock()
            marker = await self._runs.read_cycle_marker(context.story_id, now=now)
            history = await self._runs.list_runs(
                context.story_id, limit=self._config.history_limits.automation,
            )
            previous = previous_run_metrics(history)
            seed_board = self._seed_board(context, request)
            seed_plan = build_operating_plan(
                context, now=now, board=seed_board, previous_metrics=previous,
            )
            seed_automation = build_automation_plan(
                context, seed_plan, history, now=now, board=seed_board,
            )
            recommendation = seed_automation.recommendation(request.recommendation_id)
            if recommendation is None:
                raise RecommendationNotFoundError(request.recommendation_id)

            execution = recommendation.execution
            merch = self._merch_attachment(
                context,
                execution.sprint_objective,
                request.merch_candidate_id or execution.merch_candidate_id,
                request.merch_channels or execution.merch_channels,
                required=execution.require_merch_plan,
            )
            board = context.role_board.seeded(
                execution.sprint_objective, execution.horizon_days, overrides,
            )
            plan = build_operating_plan(context, now=now, board=board, previous_metrics=previous)

            run = None
            if request.persist:
                run = self._new_run(
                    context,
                    user_id or context.owner_user_id,
                    execution,
                    AutomationRunPlan(
                        executed_recommendation_id=recommendation.id,
                        trigger_summary=seed_automation.trigger_summary,
                        operating_plan=plan,
                        merch_candidate_id=merch.candidate_id if merch else None,
                        merch_channels=list(merch.channels) if merch else [],
                    ),
                    plan.baseline_metrics,
                    now,
                )
                await self._runs.commit_cycle(context.story_id, marker, created=[run], now=now)
                logger.info(
                    "Automation executed %s as run %s for %s", recommendation.id, run.id, slug,
                )
                history = [run, *history]

        return AutomationResponse(
            automation_plan=build_automation_plan(context, plan, history, now=now, board=board),
            operating_plan=plan,
            role_board=board,
            executed_recommendation=recommendation,
            merch=merch,
            run=run.summary() if run else None,
            history=_summaries(history, self._config.response_history.automation),
        )

    # ── Policy learning ──────────────────────────────────────────

    async def learning(self, slug: str, request: LearningRequest) -> LearningResponse:
        context = await self._context(slug)
        history = await self._runs.list_runs(
            context.story_id, limit=request.limit or self._config.history_limits.learning,
        )
        now = self._clock()
        snapshot = build_policy_snapshot(
            context, self._seed_board(context, request), history, request.mode, now=now,
        )
        return LearningResponse(
            mode=request.mode,
            learning=snapshot.learning,
            decision_policy=snapshot.policy,
            governance=snapshot.governance,
            backlog=snapshot.backlog,
            history=_summaries(history, self._config.response_history.learning),
        )

    # ── Autorun ──────────────────────────────────────────────────

    async def autorun(
        self, slug: str, request: AutorunRequest, user_id: str | None = None,
    ) -> AutorunResponse:
        """Execute one autonomous cycle from the governed backlog.

        Returns a normal response with ``blocked_by_governance`` set when
        governance pauses autorun and the request is not forced.

        Raises:
            FeatureDisabledError: If autorun is switched off.
            InvalidRequestError: For manual mode or an override naming a
                user outside the story.
            StoryNotFoundError: If the story has no stored context.
            DecisionCycleConflictError: If another cycle committed first.
        """
        self._require("autorun")
        if request.mode == AutonomyMode.MANUAL:
            raise InvalidRequestError("Manual mode does not support autorun execution")

        context = await self._context(slug)
        overrides = self._override_map(context, request.owner_overrides)
        actor = user_id or context.owner_user_id
        history_size = self._config.response_history.autorun

        async with self._lock(context.story_id):
            now = self._clock()
            marker = await self._runs.read_cycle_marker(context.story_id, now=now)
            history = await self._runs.list_runs(
                context.story_id, limit=self._config.history_limits.autorun,
            )
            board = self._seed_board(context, request, overrides)
            snapshot = build_policy_snapshot(context, board, history, request.mode, now=now)

            if not snapshot.governance.constraints.allow_autorun and not request.force:
                logger.info("Autorun for %s blocked by governance pause", slug)
                return AutorunResponse(
                    mode=request.mode,
                    dry_run=request.dry_run,
                    blocked_by_governance=True,
                    decision_policy=snapshot.policy,
                    policy_learning=snapshot.learning,
                    governance=snapshot.governance,
                    backlog=snapshot.backlog,
                    outcome_agent_plan=self._outcome_plan(snapshot, history, now),
                    skipped=[SkippedAction(
                        recommendation_id="governance_pause",
                        title="Governance pause",
                        reason=" ".join(snapshot.governance.reasons),
                    )],
                    history=_summaries(history, history_size),
                )

            effective_max = min(
                request.max_actions or snapshot.policy.max_actions_per_cycle,
                snapshot.governance.constraints.max_actions_cap,
            )
            selected = select_execution_items(snapshot.backlog, effective_max)
            should_persist = request.persist and not request.dry_run
            previous = previous_run_metrics(history)

            created: list[Run] = []
            executed: list[ExecutedAction] = []
            for item in selected:
                item_board = context.role_board.seeded(
                    item.execution.sprint_objective, item.execution.horizon_days, overrides,
                )
                operating_plan = build_operating_plan(
                    context, now=now, board=item_board, previous_metrics=previous,
                )
                run = None
                if should_persist:
                    run = self._new_run(
                        context,
                        actor,
                        item.execution,
                        AutorunRunPlan(
                            executed_recommendation_id=item.recommendation_id,
                            autonomy_mode=request.mode,
                            decision_policy=snapshot.policy,
                            operating_plan=operating_plan,
                            merch_candidate_id=item.execution.merch_candidate_id,
                            merch_channels=list(item.execution.merch_channels),
                        ),
                        operating_plan.baseline_metrics,
                        now,
                    )
                    created.append(run)
                executed.append(_executed(item, run, request.dry_run))

            if created:
                await self._runs.commit_cycle(
                    context.story_id, marker, created=created, now=now,
                )
            logger.info(
                "Autorun for %s executed %d of %d selected item(s)",
                slug, len(created), len(selected),
            )

        combined = [*created, *history]
        refreshed = build_policy_snapshot(context, board, combined, request.mode, now=now)
        return AutorunResponse(
            mode=request.mode,
            dry_run=request.dry_run,
            blocked_by_governance=False,
            decision_policy=refreshed.policy,
            policy_learning=refreshed.learning,
            governance=refreshed.governance,
            backlog=refreshed.backlog,
            outcome_agent_plan=self._outcome_plan(refreshed, combined, now),
            executed=executed,
            skipped=_skipped(snapshot.backlog),
            history=_summaries(combined, history_size),
        )

    # ── Optimizer ────────────────────────────────────────────────

    async def optimizer(self, slug: str, request: OptimizerRequest) -> OptimizerResponse:
        """Optimizer report with the chosen objective applied to the governed policy.

        Without an objective the report's recommended one is applied.
        Nothing is written.
        """
        self._require("optimizer")
        context = await self._context(slug)
        history = await self._runs.list_runs(
            context.story_id, limit=self._config.history_limits.optimizer,
        )
        now = self._clock()
        base = build_policy_snapshot(
            context, self._seed_board(context, request), history, request.mode, now=now,
        )
        optimized = build_optimization_snapshot(base, history, request.objective, now=now)
        preview = select_execution_items(
            optimized.backlog, request.max_actions or optimized.policy.max_actions_per_cycle,
        )
        return OptimizerResponse(
            mode=optimized.policy.mode,
            objective=optimized.selected_objective,
            learning=base.learning,
            governance=base.governance,
            optimizer_report=optimized.optimizer,
            optimized_policy=optimized.policy,
            optimized_backlog=optimized.backlog,
            preview_execution=[_preview(item) for item in preview],
            summary=f"Optimizer prepared {len(preview)} execution-ready recommendation(s).",
            history=_summaries(history, request.limit or self._config.response_history.optimizer),
        )

    # ── Strategy loop ────────────────────────────────────────────

    async def strategy_loop(
        self, slug: str, request: StrategyLoopRequest, user_id: str | None = None,
    ) -> StrategyLoopResponse:
        """Project the strategy loop and optionally act on it.

        ``self_heal`` applies the self-healing patch; ``execute_recovery``
        applies it and executes the ready recovery items;
        ``execute_window`` executes the active window when its gate is
        ready (or when forced). With none of these set it is a preview.
        """
        self._require("strategy_loop")
        healing_requested = request.self_heal or request.execute_recovery
        if healing_requested:
            self._require("self_healing")

        context = await self._context(slug)
        actor = user_id or context.owner_user_id
        healing_enabled = self._config.features.self_healing

        async with self._lock(context.story_id):
            now = self._clock()
            marker = await self._runs.read_cycle_marker(context.story_id, now=now)
            history = await self._runs.list_runs(
                context.story_id, limit=self._config.history_limits.strategy_loop,
            )
            board = self._seed_board(context, request)
            base = build_policy_snapshot(context, board, history, request.mode, now=now)
            optimized = build_optimization_snapshot(base, history, request.objective, now=now)
            automation = base.automation
            optimizer = optimized.optimizer
            learning = base.learning
            governance = base.governance

            def strategy(
                policy: DecisionPolicy,
                objective: OptimizationObjective,
                *,
                cadence_hours: float | None,
                auto_optimize: bool | None,
                max_actions: int | None,
                policy_override: DecisionPolicy | None = None,
            ) -> StrategyState:
                return build_strategy_state(
                    automation, history, policy, optimizer, governance, learning, objective,
                    now=now,
                    cadence_hours=cadence_hours,
                    auto_optimize=auto_optimize,
                    max_actions=max_actions,
                    policy_override=policy_override,
                )

            state = strategy(
                optimized.policy,
                optimized.selected_objective,
                cadence_hours=request.cadence_hours,
                auto_optimize=request.auto_optimize,
                max_actions=request.max_actions,
            )
            healing = (
                build_healing_report(state, governance, learning, now=now)
                if healing_enabled else None
            )

            should_persist = request.persist and not request.dry_run
            verb = "Previewed" if request.dry_run else "Executed"
            patched: DecisionPolicy | None = None
            blocked = False
            created: list[Run] = []
            executed: list[ExecutedAction] = []
            recovery_executed: list[ExecutedAction] = []
            summary = (
                f"Strategy loop prepared {len(state.loop.cycles)} cycle(s) at "
                f"{state.loop.cadence_hours}h cadence ("
                f"{'auto-optimized' if state.loop.auto_optimize_enabled else 'operator-controlled'})."
            )

            if healing_requested and healing is not None:
                trigger_report = healing
                patch = trigger_report.policy_patch
                patch_max = request.max_actions or patch.max_actions_per_cycle
                patched = apply_self_healing_patch(state.policy, trigger_report)
                state = strategy(
                    patched,
                    patch.objective,
                    cadence_hours=patch.cadence_hours,
                    auto_optimize=False,
                    max_actions=patch_max,
                    policy_override=patched,
                )
                healing = build_healing_report(state, governance, learning, now=now)
                summary = (
                    f"Self-healing patch applied ({trigger_report.severity}) with "
                    f"{patch.cadence_hours}h cadence and {patch_max} max action(s)."
                )

                if request.execute_recovery:
                    by_id = {item.recommendation_id: item for item in state.backlog.items}
                    ready = [
                        by_id[entry.recommendation_id]
                        for entry in trigger_report.recovery_plan
                        if entry.status == BacklogItemStatus.READY
                        and entry.recommendation_id in by_id
                    ][:patch_max]

                    for item in ready:
                        run = None
                        if should_persist:
                            run = self._new_run(
                                context,
                                actor,
                                item.execution,
                                SelfHealingRunPlan(
                                    executed_recommendation_id=item.recommendation_id,
                                    autonomy_mode=state.policy.mode,
                                    severity=trigger_report.severity.value,
                                    roi_gap_score=trigger_report.roi_gap_score,
                                    target_objective=patch.objective,
                                    cadence_hours=patch.cadence_hours,
                                    triggers=list(trigger_report.triggers),
                                    strategy_policy=state.policy,
                                ),
                                base.operating_plan.baseline_metrics,
                                now,
                            )
                            created.append(run)
                        action = _executed(item, run, request.dry_run)
                        recovery_executed.append(action)
                        executed.append(action)

                    if created:
                        await self._runs.commit_cycle(
                            context.story_id, marker, created=created, now=now,
                        )
                    history = [*created, *history]
                    governed = govern(automation, state.policy, history, now=now)
                    learning, governance = governed.learning, governed.governance
                    state = strategy(
                        governed.policy,
                        patch.objective,
                        cadence_hours=patch.cadence_hours,
                        auto_optimize=False,
                        max_actions=patch_max,
                        policy_override=patched,
                    )
                    healing = build_healing_report(state, governance, learning, now=now)
                    if ready:
                        summary = (
                            f"{verb} {len(ready)} self-healing recovery action(s). "
                            f"ROI gap now {healing.roi_gap_score}."
                        )
                    else:
                        summary = (
                            "Self-healing found no execution-ready recovery items "
                            "in the current window."
                        )

            if request.execute_window and not request.execute_recovery:
                window = state.window
                gate = window.gate
                if gate.status != WindowGateStatus.READY and not request.force:
                    blocked = True
                    summary = f"Execution window blocked by {gate.status} gate. {gate.reasons[0]}"
                else:
                    selected = select_execution_items(
                        state.backlog, request.max_actions or window.preview.max_actions,
                    )
                    cycle = window.active_cycle
                    for item in selected:
                        run = None
                        if should_persist:
                            run = self._new_run(
                                context,
                                actor,
                                item.execution,
                                WindowLoopRunPlan(
                                    executed_recommendation_id=item.recommendation_id,
                                    autonomy_mode=state.policy.mode,
                                    strategy_cycle=cycle.cycle if cycle else 1,
                                    strategy_objective=(
                                        cycle.objective if cycle else state.loop.selected_objective
                                    ),
                                    cadence_hours=state.loop.cadence_hours,
                                    gate_status=gate.status.value,
                                    gate_reasons=list(gate.reasons),
                                    strategy_policy=state.policy,
                                ),
                                base.operating_plan.baseline_metrics,
                                now,
                            )
                            created.append(run)
                        executed.append(_executed(item, run, request.dry_run))

                    if created:
                        await self._runs.commit_cycle(
                            context.story_id, marker, created=created, now=now,
                        )
                    history = [*created, *history]
                    governed = govern(automation, state.policy, history, now=now)
                    learning, governance = governed.learning, governed.governance
                    state = strategy(
                        governed.policy,
                        window.adaptation.recommended_objective,
                        cadence_hours=window.adaptation.next_cadence_hours,
                        auto_optimize=state.loop.auto_optimize_enabled,
                        max_actions=request.max_actions,
                        policy_override=patched,
                    )
                    if healing_enabled:
                        healing = build_healing_report(state, governance, learning, now=now)
                    summary = (
                        f"{verb} {len(selected)} recommendation(s). Next cadence suggestion: "
                        f"{window.adaptation.next_cadence_hours}h ({window.adaptation.reason})"
                    )

        if created:
            logger.info("Strategy loop for %s created %d run(s)", slug, len(created))

        return StrategyLoopResponse(
            mode=state.policy.mode,
            objective=state.loop.selected_objective,
            cadence_hours=state.loop.cadence_hours,
            auto_optimize_enabled=state.loop.auto_optimize_enabled,
            learning=learning,
            governance=governance,
            optimizer_report=optimizer,
            strategy_loop=state.loop,
            window_report=state.window,
            self_healing_report=healing,
            self_healing_patch_applied=patched is not None,
            strategy_policy=state.policy,
            strategy_backlog=state.backlog,
            preview_execution=[_preview(item) for item in state.preview],
            executed=executed,
            recovery_executed=recovery_executed,
            skipped=_skipped(state.backlog),
            blocked_by_window_gate=blocked,
            summary=summary,
            history=_summaries(
                history, request.limit or self._config.response_history.strategy_loop,
            ),
        )

    # ── Outcome agent ────────────────────────────────────────────

    async def outcome_agent(
        self,
        slug: str,
        request: OutcomeAgentRequest,
        *,
        execute: bool = False,
    ) -> OutcomeAgentResponse:
        """Preview, or with ``execute`` close, stale open runs.

        Closed runs take the candidate's suggested decision, the current
        metrics and the suggested note behind the optional prefix.
        """
        self._require("outcome_agent")
        context = await self._context(slug)
        defaults = self._config.outcome_agent
        stale_after = request.stale_after_hours or defaults.stale_after_hours
        max_runs = request.max_runs or defaults.max_runs

        async with self._lock(context.story_id):
            now = self._clock()
            marker = await self._runs.read_cycle_marker(context.story_id, now=now)
            history = await self._runs.list_runs(
                context.story_id,
                limit=request.limit or self._config.history_limits.outcome_agent,
            )
            board = self._seed_board(context, request)

            def plan_for(runs: Sequence[Run]) -> tuple[PolicySnapshot, OutcomeAgentPlan]:
                snapshot = build_policy_snapshot(context, board, runs, request.mode, now=now)
                return snapshot, build_outcome_agent_plan(
                    runs,
                    snapshot.operating_plan.baseline_metrics,
                    snapshot.learning,
                    now=now,
                    stale_after_hours=stale_after,
                )

            snapshot, plan = plan_for(history)
            selected = select_outcome_candidates(plan, max_runs)
            should_persist = execute and request.persist and not request.dry_run
            closed: list[ClosedRun] = []

            if execute:
                by_id = {run.id: run for run in history}
                updated: dict[str, Run] = {}
                for candidate in selected:
                    note = closing_note(candidate, request.outcome_note_prefix)
                    run = by_id.get(candidate.run_id)
                    if run is not None and should_persist:
                        updated[run.id] = run.with_outcome(
                            now=now,
                            outcome_metrics=candidate.suggested_outcome_metrics,
                            outcome_decision=candidate.suggested_outcome_decision,
                            outcome_notes=note,
                        )
                    closed.append(ClosedRun(
                        run_id=candidate.run_id,
                        decision=candidate.suggested_outcome_decision,
                        status="completed" if should_persist else "dry_run",
                        note=note,
                    ))

                if updated:
                    await self._runs.commit_cycle(
                        context.story_id, marker, updated=list(updated.values()), now=now,
                    )
                    logger.info("Outcome agent closed %d run(s) for %s", len(updated), slug)
                    history = [updated.get(run.id, run) for run in history]
                    snapshot, plan = plan_for(history)

        return OutcomeAgentResponse(
            mode=request.mode,
            dry_run=not should_persist,
            stale_after_hours=stale_after,
            max_runs=max_runs,
            learning=snapshot.learning,
            decision_policy=snapshot.learned_policy,
            plan=plan,
            selected_candidates=selected,
            closed_runs=closed,
            history=_summaries(history, self._config.response_history.outcome_agent),
        )

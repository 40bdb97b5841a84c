"""Stage composition shared by the service flows.

Each function here wires the pure stages together in the order a flow
needs them. Nothing in this module reads the store or the clock.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from flywheel.engine.automation import build_automation_plan
from flywheel.engine.governance import apply_governance, build_governance_report
from flywheel.engine.healing import build_self_healing_report
from flywheel.engine.learning import apply_learning, build_learning_report
from flywheel.engine.metrics import build_operating_plan, previous_run_metrics
from flywheel.engine.optimizer import apply_optimizer_profile, build_optimizer_report
from flywheel.engine.policy import build_backlog, build_decision_policy, select_execution_items
from flywheel.engine.strategy import build_strategy_loop
from flywheel.engine.window import build_window_report
from flywheel.schemas.automation import AutomationPlan, OperatingPlan
from flywheel.schemas.enums import AutonomyMode, OptimizationObjective
from flywheel.schemas.governance import GovernanceReport
from flywheel.schemas.healing import SelfHealingReport
from flywheel.schemas.learning import LearningReport
from flywheel.schemas.policy import Backlog, BacklogItem, DecisionPolicy
from flywheel.schemas.runs import Run
from flywheel.schemas.strategy import ExecutionWindowReport, OptimizerReport, StrategyLoopReport
from flywheel.schemas.upstream import RoleBoard, StoryContext


@dataclass(frozen=True)
class GovernedState:
    """Learning, governance and the governed policy for one history."""

    learning: LearningReport
    governance: GovernanceReport
    policy: DecisionPolicy


@dataclass(frozen=True)
class PolicySnapshot:
    """Everything up to the governed backlog."""

    operating_plan: OperatingPlan
    automation: AutomationPlan
    base_policy: DecisionPolicy
    learning: LearningReport
    learned_policy: DecisionPolicy
    governance: GovernanceReport
    policy: DecisionPolicy
    backlog: Backlog


@dataclass(frozen=True)
class OptimizationSnapshot:
    base: PolicySnapshot
    optimizer: OptimizerReport
    selected_objective: OptimizationObjective
    policy: DecisionPolicy
    backlog: Backlog


@dataclass(frozen=True)
class StrategyState:
    loop: StrategyLoopReport
    policy: DecisionPolicy
    backlog: Backlog
    window: ExecutionWindowReport
    preview: list[BacklogItem] = field(default_factory=list)


def govern(
    automation: AutomationPlan,
    policy: DecisionPolicy,
    history: Sequence[Run],
    *,
    now: datetime,
    learning: LearningReport | None = None,
) -> GovernedState:
    """Re-derive learning and governance for *history* and cap *policy*.

    The preliminary backlog built here only feeds the governance cap.
    """
    learning = learning or build_learning_report(history, now=now)
    preliminary = build_backlog(policy.mode, automation, policy, history, now=now)
    governance = build_governance_report(history, learning, policy, preliminary, now=now)
    return GovernedState(learning, governance, apply_governance(policy, governance))


def build_policy_snapshot(
    context: StoryContext,
    board: RoleBoard,
    history: Sequence[Run],
    mode: AutonomyMode,
    *,
    now: datetime,
) -> PolicySnapshot:
    """Operating plan through governed backlog, with *mode* locked."""
    operating_plan = build_operating_plan(
        context, now=now, board=board, previous_metrics=previous_run_metrics(history),
    )
    automation = build_automation_plan(context, operating_plan, history, now=now, board=board)
    base_policy = build_decision_policy(mode, automation, operating_plan, history, now=now)
    learning = build_learning_report(history, now=now)
    learned = apply_learning(base_policy, learning, lock_mode=mode)
    governed = govern(automation, learned, history, now=now, learning=learning)
    backlog = build_backlog(mode, automation, governed.policy, history, now=now)
    return PolicySnapshot(
        operating_plan=operating_plan,
        automation=automation,
        base_policy=base_policy,
        learning=learning,
        learned_policy=learned,
        governance=governed.governance,
        policy=governed.policy,
        backlog=backlog,
    )


def build_optimization_snapshot(
    base: PolicySnapshot,
    history: Sequence[Run],
    objective: OptimizationObjective | None,
    *,
    now: datetime,
) -> OptimizationSnapshot:
    optimizer = build_optimizer_report(
        base.policy, base.learning, base.governance, base.backlog, now=now,
    )
    selected = objective or optimizer.recommended_objective
    policy = apply_optimizer_profile(base.policy, optimizer, selected)
    backlog = build_backlog(policy.mode, base.automation, policy, history, now=now)
    return OptimizationSnapshot(base, optimizer, selected, policy, backlog)


def build_strategy_state(
    automation: AutomationPlan,
    history: Sequence[Run],
    policy: DecisionPolicy,
    optimizer: OptimizerReport,
    governance: GovernanceReport,
    learning: LearningReport,
    selected_objective: OptimizationObjective,
    *,
    now: datetime,
    cadence_hours: float | None = None,
    auto_optimize: bool | None = None,
    max_actions: int | None = None,
    policy_override: DecisionPolicy | None = None,
) -> StrategyState:
    """Project the strategy loop from *policy* and gate its active window.

    The strategy policy takes cycle one's mode, budget and cooldown.
    A *policy_override* (the self-healing patch) replaces it as-is.
    The preview selects from the backlog built under the strategy policy.
    """
    loop = build_strategy_loop(
        policy,
        optimizer,
        governance,
        learning,
        build_backlog(policy.mode, automation, policy, history, now=now),
        selected_objective,
        now=now,
        cadence_hours=cadence_hours,
        auto_optimize=auto_optimize,
    )

    strategy_policy = policy_override or policy
    if policy_override is None and loop.cycles:
        first = loop.cycles[0]
        strategy_policy = policy.revised(
            mode=first.mode,
            max_actions_per_cycle=first.max_actions_per_cycle,
            cooldown_hours=first.cooldown_hours,
            rationale=[f"Strategy loop cycle 1 objective: {first.objective}."],
        )

    backlog = build_backlog(strategy_policy.mode, automation, strategy_policy, history, now=now)
    window = build_window_report(loop, history, learning, governance, backlog, now=now)
    preview = select_execution_items(
        backlog, max_actions if max_actions is not None else window.preview.max_actions,
    )
    return StrategyState(loop, strategy_policy, backlog, window, preview)


def build_healing_report(
    state: StrategyState,
    governance: GovernanceReport,
    learning: LearningReport,
    *,
    now: datetime,
) -> SelfHealingReport:
    return build_self_healing_report(
        state.policy, governance, learning, state.loop, state.window, state.backlog, now=now,
    )

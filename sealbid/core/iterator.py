"""
Resumable Iterator - bounded "do work" calls over a stepped computation.

The engine's work is split into strictly ordered steps, each made of
position-addressed units. A caller asks for "up to k units" of a step and
pays for them from a gas budget; whatever is left stays exactly where it
stopped for the next caller.

Two entry styles:
1. run_step_units(target, step, units, budget) - one step, explicit units
2. ComputeIterator.next(iterations, ...) - all steps, weighted iterations

Weighted iterations:
    A unit of a step with weight w consumes w iterations. A remainder that
    does not cover a full unit still buys one unit (rounded up), so any
    positive request makes progress.

Target protocol (duck-typed, implemented by AuctionEngine):
    current_step: int
    step_size(step) -> int          units in the step
    step_progress(step) -> int      units completed in the step
    unit_cost(step) -> int          gas for the next unit of the step
    run_unit(step) -> None          run the next unit, completing the step
                                    (and any following empty steps) at the end
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from sealbid.core.types import EngineStep, WorkStatus
from sealbid.crypto.fhe import BLOCK_FHE_GAS_LIMIT
from sealbid.utils.logger import get_logger
from sealbid.utils.validation import validate_budget, validate_unit_count

logger = get_logger("iterator")


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class WorkReport:
    """
    Result of one "do work" call.

    Attributes:
        status: MORE_WORK_NEEDED, FINISHED or INSUFFICIENT_BUDGET
        units: Units actually run
        cost: Gas charged for those units
        error: Non-empty when the call was rejected (nothing was run)
        iter_progress: Weighted progress after the call (iterator only)
    """
    status: WorkStatus
    units: int = 0
    cost: int = 0
    error: str = ""
    iter_progress: Optional[int] = None

    @property
    def ok(self) -> bool:
        return not self.error

    @property
    def finished(self) -> bool:
        return self.ok and self.status == WorkStatus.FINISHED


def _rejected(error: str) -> WorkReport:
    logger.warning(f"Work request rejected: {error}")
    return WorkReport(status=WorkStatus.MORE_WORK_NEEDED, error=error)


# =============================================================================
# Single Step
# =============================================================================


def run_step_units(target, step: int, units: int, budget: int) -> WorkReport:
    """
    Run up to `units` units of `step` within `budget` gas.

    Returns:
        FINISHED if the step is (or already was) complete,
        MORE_WORK_NEEDED if units remain,
        INSUFFICIENT_BUDGET if not even one unit was affordable.
        A report with `error` set if the step is not reachable yet.
    """
    valid, err = validate_unit_count(units)
    if not valid:
        return _rejected(err)
    valid, err = validate_budget(budget)
    if not valid:
        return _rejected(err)

    current = target.current_step
    if current > step:
        return WorkReport(status=WorkStatus.FINISHED)
    if current < step:
        return _rejected(
            f"Step {EngineStep(step).name} not ready, engine is at {EngineStep(current).name}"
        )

    todo = min(units, target.step_size(step) - target.step_progress(step))
    done = 0
    spent = 0
    while done < todo:
        cost = target.unit_cost(step)
        if spent + cost > budget:
            break
        target.run_unit(step)
        spent += cost
        done += 1

    if target.current_step > step:
        status = WorkStatus.FINISHED
    elif done == 0 and todo > 0:
        status = WorkStatus.INSUFFICIENT_BUDGET
    else:
        status = WorkStatus.MORE_WORK_NEEDED

    if done:
        logger.debug(
            f"{EngineStep(step).name}: ran {done} unit(s), "
            f"progress {target.step_progress(step)}/{target.step_size(step)}, gas {spent}"
        )
    return WorkReport(status=status, units=done, cost=spent)


# =============================================================================
# Weighted Iterator
# =============================================================================


class ComputeIterator:
    """
    Drives every step of a target with weighted iterations.

    The default weights (1, 2, 1, 1) make the ranking step count double:
    for N bids the full run is N(2N+1) iterations and a blind claim is
    possible after N(N+1).
    """

    def __init__(
        self,
        target,
        weights: Sequence[int] = (1, 2, 1, 1),
        default_budget: int = BLOCK_FHE_GAS_LIMIT,
    ):
        if len(weights) != int(EngineStep.FINISHED):
            raise ValueError(f"Expected {int(EngineStep.FINISHED)} step weights, got {len(weights)}")
        if any(w < 1 for w in weights):
            raise ValueError("Step weights must be >= 1")

        self.target = target
        self.weights = tuple(weights)
        self.default_budget = default_budget

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def _weighted_size(self, step: int) -> int:
        return self.target.step_size(step) * self.weights[step]

    @property
    def iter_progress(self) -> int:
        current = self.target.current_step
        total = sum(self._weighted_size(s) for s in range(min(current, len(self.weights))))
        if current < len(self.weights):
            total += self.target.step_progress(current) * self.weights[current]
        return total

    @property
    def iter_progress_max(self) -> int:
        return sum(self._weighted_size(s) for s in range(len(self.weights)))

    @property
    def min_iterations_for_blind_claim(self) -> int:
        return sum(self._weighted_size(s) for s in range(int(EngineStep.ALLOCATION_BY_ID)))

    # -------------------------------------------------------------------------
    # Work
    # -------------------------------------------------------------------------

    def next(
        self,
        iterations: int,
        budget: Optional[int] = None,
        stop_at_blind_claim: bool = False,
    ) -> WorkReport:
        """
        Spend up to `iterations` weighted iterations across steps.

        Args:
            iterations: Weighted iterations to spend
            budget: Gas budget for the whole call (default_budget if None)
            stop_at_blind_claim: Stop once allocation by rank is complete

        Returns:
            WorkReport with total units, gas and the resulting iter_progress
        """
        valid, err = validate_unit_count(iterations)
        if not valid:
            return _rejected(err)
        budget = self.default_budget if budget is None else budget
        valid, err = validate_budget(budget)
        if not valid:
            return _rejected(err)

        goal = EngineStep.ALLOCATION_BY_ID if stop_at_blind_claim else EngineStep.FINISHED
        remaining = iterations
        total_units = 0
        total_cost = 0
        starved = False

        while remaining > 0 and self.target.current_step < goal:
            step = self.target.current_step
            weight = self.weights[step]
            units = -(-remaining // weight)

            report = run_step_units(self.target, step, units, budget - total_cost)
            if not report.ok:
                return report

            total_units += report.units
            total_cost += report.cost
            remaining -= report.units * weight

            if report.status == WorkStatus.INSUFFICIENT_BUDGET:
                starved = True
                break
            if report.status != WorkStatus.FINISHED:
                break

        if self.target.current_step >= goal:
            status = WorkStatus.FINISHED
        elif starved and total_units == 0:
            status = WorkStatus.INSUFFICIENT_BUDGET
        else:
            status = WorkStatus.MORE_WORK_NEEDED

        progress = self.iter_progress
        logger.debug(
            f"next({iterations}): {total_units} unit(s), gas {total_cost}, "
            f"iter progress {progress}/{self.iter_progress_max}"
        )
        return WorkReport(
            status=status,
            units=total_units,
            cost=total_cost,
            iter_progress=progress,
        )


__all__ = ["WorkReport", "WorkStatus", "run_step_units", "ComputeIterator"]

"""
Engine State - the tagged (step, progress) checkpoint.

The encrypted vectors live with their components; this record is what
decides which unit runs next. Together they are persisted as one snapshot so
any later process can resume exactly where the last call stopped.
"""

from dataclasses import dataclass, field
from typing import List, Tuple

from sealbid.core.types import EngineStep
from sealbid.crypto.fhe import BLOCK_FHE_GAS_LIMIT


STEP_COUNT = int(EngineStep.FINISHED)


def step_sizes(n: int) -> Tuple[int, int, int, int]:
    """Units per step for n bids: N, N(N-1)/2, N, N^2."""
    return (n, n * (n - 1) // 2, n, n * n)


@dataclass
class EngineState:
    """
    Attributes:
        started: Bidding closed and computation begun
        bid_count: N, fixed when computation starts
        step: Current step
        progress: Units completed per step
        step_weights: Iterations charged per unit, per step
        gas_limit: Default budget for one call
    """
    started: bool = False
    bid_count: int = 0
    step: EngineStep = EngineStep.VALIDATION
    progress: List[int] = field(default_factory=lambda: [0] * STEP_COUNT)
    step_weights: Tuple[int, int, int, int] = (1, 2, 1, 1)
    gas_limit: int = BLOCK_FHE_GAS_LIMIT

    def size(self, step: int) -> int:
        if not self.started:
            return 0
        return step_sizes(self.bid_count)[step]

    def is_complete(self, step: int) -> bool:
        return self.started and self.step > step

    def to_dict(self) -> dict:
        return {
            "started": self.started,
            "bid_count": self.bid_count,
            "step": int(self.step),
            "progress": list(self.progress),
            "step_weights": list(self.step_weights),
            "gas_limit": self.gas_limit,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EngineState":
        return cls(
            started=data["started"],
            bid_count=data["bid_count"],
            step=EngineStep(data["step"]),
            progress=list(data["progress"]),
            step_weights=tuple(data["step_weights"]),
            gas_limit=data["gas_limit"],
        )


__all__ = ["EngineState", "step_sizes", "STEP_COUNT"]

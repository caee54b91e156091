"""
Shared enumerations for the auction engine.

Kept apart from the engine package so configuration can reference them
without importing the engine itself.
"""

from enum import IntEnum


class TieBreakRule(IntEnum):
    """Secondary ordering key applied when two prices are equal."""
    PRICE_ID = 0            # earlier registration wins
    PRICE_QUANTITY_ID = 1   # larger quantity wins, then earlier registration
    RANDOM = 2              # smaller pre-assigned random key wins


class EngineStep(IntEnum):
    """Engine computation steps, strictly ordered."""
    VALIDATION = 0
    RANKING = 1
    ALLOCATION_BY_RANK = 2
    ALLOCATION_BY_ID = 3
    FINISHED = 4


class WorkStatus(IntEnum):
    """Outcome of one 'do work' call."""
    MORE_WORK_NEEDED = 0
    FINISHED = 1
    INSUFFICIENT_BUDGET = 2


__all__ = ["TieBreakRule", "EngineStep", "WorkStatus"]

"""
Decision delegate schemas.

Defines the contract between the pipeline runner and the external decision
agent. The agent can approve, redirect or reject a signal, and may propose a
transient parameter adjustment; it can never bypass the Risk Manager.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

Action = Literal["LONG", "SHORT", "HOLD"]
VALID_ACTIONS = ("LONG", "SHORT", "HOLD")


@dataclass
class Decision:
    """Agent verdict for a single symbol."""
    symbol: str
    action: Action
    confidence: Optional[float] = None   # 0.0–1.0, replaces the signal's if given
    reason: str = ""

    def __post_init__(self):
        if self.action not in VALID_ACTIONS:
            raise ValueError(f"action must be one of {VALID_ACTIONS}, got {self.action!r}")
        if self.confidence is not None:
            self.confidence = max(0.0, min(1.0, float(self.confidence)))


@dataclass
class DelegateResponse:
    """Parsed agent reply."""
    decisions: List[Decision] = field(default_factory=list)
    summary: str = ""
    adjustments: Optional[Dict[str, Any]] = None   # trade_agent-shaped partial overlay


@dataclass
class ApplyResult:
    """What apply_decisions() changed in the signal file."""
    approved: int = 0
    rejected: int = 0
    unmatched: List[str] = field(default_factory=list)

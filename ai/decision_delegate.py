"""
Decision delegate: hands a cycle's signals to an external agent for review.

The agent is the ``openclaw`` CLI, run as a subprocess with a hard timeout.
Any failure (missing binary, timeout, non-zero exit, unparsable reply)
degrades to "no override": the cycle proceeds with the default signals.

Reply contract (JSON, possibly wrapped in log noise or an openclaw envelope):
    {"decisions": [{"symbol", "action", "confidence", "reason"}, ...],
     "summary": "...",
     "adjustments": {"risk": {...}, "trailing_stop": {...}}}
A bare JSON array of decisions is accepted too.
"""

import json
import logging
import subprocess
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ai.schemas import ApplyResult, Decision, DelegateResponse
from core.exceptions import DelegateUnavailable

log = logging.getLogger(__name__)

SUMMARY_INSTRUCTIONS = (
    "You review trade signals for a perpetual futures bot. Reply with JSON only: "
    '{"decisions": [{"symbol": str, "action": "LONG"|"SHORT"|"HOLD", '
    '"confidence": 0..1, "reason": str}], "summary": str, '
    '"adjustments": optional partial risk/trailing_stop overrides}.'
)


def _extract_json(text: str, opener: str) -> Optional[str]:
    """First balanced JSON object/array starting with ``opener`` in ``text``."""
    closer = "}" if opener == "{" else "]"
    start = text.find(opener)
    while start >= 0:
        depth = 0
        in_str = False
        escape = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_str:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    candidate = text[start: idx + 1]
                    try:
                        json.loads(candidate)
                        return candidate
                    except ValueError:
                        break
        start = text.find(opener, start + 1)
    return None


def _unwrap_envelope(payload: Any) -> Any:
    """openclaw --json wraps the assistant text in result.payloads[].text."""
    if not isinstance(payload, dict):
        return payload
    result = payload.get("result")
    if not isinstance(result, dict):
        return payload
    texts = [p.get("text", "") for p in result.get("payloads", []) or [] if isinstance(p, dict)]
    joined = "\n".join(t for t in texts if t)
    return joined or payload


def parse_decisions(raw: str) -> DelegateResponse:
    """
    Parse agent output into a DelegateResponse.

    Invalid decision entries are dropped individually.

    Raises:
        DelegateUnavailable: If no JSON payload can be found
    """
    text = (raw or "").strip()
    if not text:
        raise DelegateUnavailable("empty_output")

    payload: Any
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None

    payload = _unwrap_envelope(payload) if payload is not None else text
    if isinstance(payload, str):
        candidate = _extract_json(payload, "{") or _extract_json(payload, "[")
        if candidate is None:
            raise DelegateUnavailable("invalid_json", payload[:200])
        payload = json.loads(candidate)

    if isinstance(payload, list):
        payload = {"decisions": payload}
    if not isinstance(payload, dict) or not isinstance(payload.get("decisions"), list):
        raise DelegateUnavailable("invalid_json", "no decisions list")

    decisions: List[Decision] = []
    for entry in payload["decisions"]:
        if not isinstance(entry, dict):
            continue
        try:
            decisions.append(Decision(
                symbol=str(entry["symbol"]),
                action=str(entry["action"]).upper(),
                confidence=entry.get("confidence"),
                reason=str(entry.get("reason", "")),
            ))
        except (KeyError, TypeError, ValueError) as e:
            log.warning(f"Dropping invalid decision {entry}: {e}")

    adjustments = payload.get("adjustments")
    return DelegateResponse(
        decisions=decisions,
        summary=str(payload.get("summary", "")),
        adjustments=adjustments if isinstance(adjustments, dict) else None,
    )


def build_summary(signals: Dict[str, Any], open_trades: List[Dict[str, Any]],
                  params: Dict[str, Any]) -> Dict[str, Any]:
    """Compact review packet for the agent."""
    risk = params.get("risk", {}) or {}
    max_positions = int(risk.get("max_concurrent_positions", 0))
    actionable = [s for s in signals.get("signals", []) or [] if s.get("action") != "HOLD"]
    return {
        "generated_at": signals.get("generated_at"),
        "strategy": (params.get("_layers") or {}).get("strategy"),
        "signals": [
            {k: s.get(k) for k in ("symbol", "action", "confidence", "entry_price",
                                   "stop_loss", "take_profit", "reason")}
            for s in actionable
        ],
        "open_positions": [
            {k: t.get(k) for k in ("symbol", "side", "entry_price", "size", "peak_pnl_pct")}
            for t in open_trades
        ],
        "limits": {
            "max_positions": max_positions,
            "available_slots": max(0, max_positions - len(open_trades)),
            "min_signal_confidence": risk.get("min_signal_confidence"),
            "leverage": (params.get("leverage", {}) or {}).get("default"),
        },
    }


def apply_decisions(signals: Dict[str, Any], response: DelegateResponse) -> ApplyResult:
    """
    Apply agent decisions to the signal collection in place.

    HOLD rejects the signal; LONG/SHORT approves or redirects it. Signals the
    agent did not mention are left untouched.
    """
    result = ApplyResult()
    by_symbol = {s.get("symbol"): s for s in signals.get("signals", []) or []}
    for decision in response.decisions:
        signal = by_symbol.get(decision.symbol)
        if signal is None:
            result.unmatched.append(decision.symbol)
            continue
        if decision.action == "HOLD":
            signal["action"] = "HOLD"
            signal["ai_reason"] = decision.reason
            result.rejected += 1
            continue
        signal["action"] = decision.action
        if decision.confidence is not None:
            signal["confidence"] = decision.confidence
        signal["ai_reason"] = decision.reason
        result.approved += 1

    signals["ai_reviewed"] = True
    signals["ai_review_at"] = datetime.now(timezone.utc).isoformat()
    signals["ai_summary"] = response.summary
    return result


class DecisionDelegate:
    """
    Runs the agent CLI.

    Usage:
        delegate = DecisionDelegate.from_config(config)
        response = delegate.decide(summary)   # None on any failure
    """

    def __init__(self, command: str = "openclaw", agent_id: str = "main", timeout_sec: float = 300.0):
        self.command = command
        self.agent_id = agent_id
        self.timeout_sec = timeout_sec

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DecisionDelegate":
        cfg = config.get("delegate", {}) or {}
        return cls(
            command=cfg.get("command", "openclaw"),
            agent_id=cfg.get("agent_id", "main"),
            timeout_sec=float(cfg.get("timeout_sec", 300)),
        )

    def _argv(self, message: str) -> List[str]:
        return [self.command, "agent", "--agent", self.agent_id, "--message", message, "--json"]

    def ask(self, summary: Dict[str, Any]) -> DelegateResponse:
        """
        Raises:
            DelegateUnavailable: On timeout, spawn failure, bad exit or bad reply
        """
        message = f"{SUMMARY_INSTRUCTIONS}\n\n{json.dumps(summary, default=str)}"
        try:
            proc = subprocess.run(
                self._argv(message),
                capture_output=True,
                text=True,
                timeout=self.timeout_sec,
            )
        except subprocess.TimeoutExpired:
            raise DelegateUnavailable("timeout", f"no reply within {self.timeout_sec:.0f}s")
        except OSError as e:
            raise DelegateUnavailable("subprocess_error", str(e))

        if proc.returncode != 0:
            raise DelegateUnavailable("subprocess_error", f"exit {proc.returncode}: {proc.stderr.strip()[:200]}")
        return parse_decisions(proc.stdout)

    def decide(self, summary: Dict[str, Any]) -> Optional[DelegateResponse]:
        """Like ask(), but any failure yields None (proceed without override)."""
        try:
            response = self.ask(summary)
        except DelegateUnavailable as e:
            log.warning(f"Decision delegate unavailable ({e}); proceeding with default signals")
            return None
        log.info(f"Decision delegate returned {len(response.decisions)} decision(s)")
        return response

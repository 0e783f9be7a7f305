"""Risk gate — stateless policy checks for a candidate trade."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from autotrade.config.schema import RiskLimits
from autotrade.models import Direction, Position


@dataclass
class RiskVerdict:
    """Result of a risk check — allowed or rejected with a reason."""

    allowed: bool
    reason: str = ""
    check: str = ""


@dataclass(frozen=True)
class TradeCandidate:
    """A prospective trade as seen by the risk gate."""

    instrument: str
    side: Direction
    amount_usd: float


@dataclass
class RiskState:
    """Account exposure the gate evaluates against. Read-only to the gate."""

    open_positions: Mapping[str, Position] = field(default_factory=dict)
    # instrument -> side for submissions that are queued or in flight
    in_flight: Mapping[str, Direction] = field(default_factory=dict)
    daily_pnl: float = 0.0
    total_drawdown: float = 0.0

    def side_for(self, instrument: str) -> Direction | None:
        position = self.open_positions.get(instrument)
        if position is not None:
            return position.side
        return self.in_flight.get(instrument)

    def exposure_count(self) -> int:
        return len(set(self.open_positions) | set(self.in_flight))


# ── Pure check functions ──────────────────────────────────────


def check_order_size(candidate: TradeCandidate, limits: RiskLimits) -> RiskVerdict:
    """Reject orders larger than max_order_size_usd."""
    if candidate.amount_usd > limits.max_order_size_usd:
        return RiskVerdict(
            allowed=False,
            reason=(
                f"order size {candidate.amount_usd:.2f} USD exceeds maximum "
                f"{limits.max_order_size_usd:.2f} USD"
            ),
            check="max_order_size",
        )
    return RiskVerdict(allowed=True)


def check_daily_loss(state: RiskState, limits: RiskLimits) -> RiskVerdict:
    """Reject once today's P&L has reached -max_daily_loss."""
    if not state.daily_pnl > -limits.max_daily_loss:
        return RiskVerdict(
            allowed=False,
            reason=(
                f"daily loss limit reached ({state.daily_pnl:.2f} / "
                f"-{limits.max_daily_loss:.2f})"
            ),
            check="max_daily_loss",
        )
    return RiskVerdict(allowed=True)


def check_drawdown(state: RiskState, limits: RiskLimits) -> RiskVerdict:
    """Reject once drawdown from peak equity has reached -max_drawdown."""
    if not state.total_drawdown > -limits.max_drawdown:
        return RiskVerdict(
            allowed=False,
            reason=(
                f"maximum drawdown reached ({state.total_drawdown:.2f} / "
                f"-{limits.max_drawdown:.2f})"
            ),
            check="max_drawdown",
        )
    return RiskVerdict(allowed=True)


def check_max_positions(state: RiskState, limits: RiskLimits) -> RiskVerdict:
    """Reject if open plus in-flight instruments already fill max_positions."""
    count = state.exposure_count()
    if count >= limits.max_positions:
        return RiskVerdict(
            allowed=False,
            reason=f"maximum positions reached ({count}/{limits.max_positions})",
            check="max_positions",
        )
    return RiskVerdict(allowed=True)


def check_hedging(candidate: TradeCandidate, state: RiskState) -> RiskVerdict:
    """Reject an opposite-direction trade on an instrument that is already held."""
    existing = state.side_for(candidate.instrument)
    if existing is not None and existing != candidate.side:
        return RiskVerdict(
            allowed=False,
            reason=(
                f"hedging not allowed: existing {existing} position on "
                f"{candidate.instrument}, candidate is {candidate.side}"
            ),
            check="hedging",
        )
    return RiskVerdict(allowed=True)


def check_duplicate(candidate: TradeCandidate, state: RiskState) -> RiskVerdict:
    """Reject a same-direction trade on an instrument already open or queued."""
    if candidate.instrument in state.in_flight:
        return RiskVerdict(
            allowed=False,
            reason=f"duplicate: execution already in flight for {candidate.instrument}",
            check="duplicate",
        )
    if candidate.instrument in state.open_positions:
        return RiskVerdict(
            allowed=False,
            reason=(
                f"duplicate: {candidate.side} position already open on "
                f"{candidate.instrument}"
            ),
            check="duplicate",
        )
    return RiskVerdict(allowed=True)


def check_allowed_instrument(candidate: TradeCandidate, limits: RiskLimits) -> RiskVerdict:
    """Reject instruments outside a non-empty allowlist."""
    allowed = limits.allowed_instruments
    if allowed and candidate.instrument not in allowed:
        return RiskVerdict(
            allowed=False,
            reason=f"instrument {candidate.instrument} not in allowed list",
            check="allowed_instruments",
        )
    return RiskVerdict(allowed=True)


def check_profit_target(state: RiskState, limits: RiskLimits) -> RiskVerdict:
    """Stop opening positions once the optional daily profit target is hit."""
    target = limits.daily_profit_target
    if target is not None and state.daily_pnl >= target:
        return RiskVerdict(
            allowed=False,
            reason=f"daily profit target reached ({state.daily_pnl:.2f} / {target:.2f})",
            check="daily_profit_target",
        )
    return RiskVerdict(allowed=True)


def evaluate(
    candidate: TradeCandidate,
    limits: RiskLimits,
    state: RiskState,
) -> RiskVerdict:
    """Composite risk check — returns the first failing verdict or ALLOW.

    Order: order size, daily loss, drawdown, position count, hedging,
    duplication, allowlist, profit target.
    """
    verdict = check_order_size(candidate, limits)
    if not verdict.allowed:
        return verdict

    for state_check in (check_daily_loss, check_drawdown, check_max_positions):
        verdict = state_check(state, limits)
        if not verdict.allowed:
            return verdict

    verdict = check_hedging(candidate, state)
    if not verdict.allowed:
        return verdict

    verdict = check_duplicate(candidate, state)
    if not verdict.allowed:
        return verdict

    verdict = check_allowed_instrument(candidate, limits)
    if not verdict.allowed:
        return verdict

    return check_profit_target(state, limits)

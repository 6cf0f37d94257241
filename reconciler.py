"""Rebalance reconciliation: merge an untrusted AI proposal with the enforced keep-set."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import MAX_POSITIONS, RISK
from portfolio import (
    STATUS_HOLD, STATUS_NEW, Position, SoldPosition,
    canonical_code, compute_roi, market_today, to_float,
)

logger = logging.getLogger(__name__)

FORCED_KEEP_REASON = "[Forced keep] Technically sound holding retained by the firewall"
REBALANCED_REASON = "Portfolio rebalanced"
LEAVER_REASON = "[Hard rule] Technical SELL signal"


def stop_loss_reason(roi: float, limit: float) -> str:
    return f"[Stop loss] ROI {roi:.1f}% breached the -{limit:g}% limit"


def overflow_reason(limit: int) -> str:
    return f"[Capacity] More keepers than {limit} slots, lowest ROI dropped"


@dataclass
class ReconcileResult:
    """Outcome of a reconciliation."""
    finalists: List[Position] = field(default_factory=list)
    sold: List[SoldPosition] = field(default_factory=list)


def validate_proposal(proposal: Any) -> List[Dict]:
    """Shape-check an AI proposal.

    A non-list proposal is treated as empty. Entries that are not objects
    or carry no code are skipped. Codes are canonicalized.
    """
    if not isinstance(proposal, list):
        if proposal is not None:
            logger.warning("Proposal is not a list (%s), treating as empty", type(proposal).__name__)
        return []

    entries = []
    for i, item in enumerate(proposal):
        if not isinstance(item, dict):
            logger.warning("Proposal entry %d is not an object, skipped", i)
            continue
        code = canonical_code(item.get("code"))
        if not code:
            logger.warning("Proposal entry %d has no code, skipped", i)
            continue
        entries.append({**item, "code": code})
    return entries


def _index_positions(positions: Optional[List[Position]]) -> Dict[str, Position]:
    """Positions keyed by canonical code, first occurrence wins."""
    indexed = {}
    for position in positions or []:
        code = canonical_code(position.code)
        if code and code not in indexed:
            indexed[code] = position
    return indexed


def _resolve_price(code: str, fresh_prices: Dict[str, float], *fallbacks: Any) -> float:
    """Fresh price, else the first positive fallback, else 0."""
    price = to_float(fresh_prices.get(code))
    if price > 0:
        return price
    for fallback in fallbacks:
        value = to_float(fallback)
        if value > 0:
            return value
    return 0.0


def _known_roi(code: str, entry_price: float, price: float) -> float:
    """ROI against a resolved price; 0 when no price could be resolved."""
    if price <= 0:
        if entry_price:
            logger.warning("No price for %s, ROI left at 0", code)
        return 0.0
    return compute_roi(entry_price, price)


def _build_position(code: str, meta: Dict, prior: Optional[Position],
                    fresh_prices: Dict[str, float], today: str, forced: bool) -> Position:
    """Resolve prices, entry and ROI for one surviving entry."""
    current_price = _resolve_price(
        code, fresh_prices,
        meta.get("currentPrice"),
        prior.current_price if prior else None,
    )

    # Entry price belongs to the prior book; proposal content never sets it
    if prior is None or not prior.entry_price:
        entry_price = current_price
        entry_date = today
    else:
        entry_price = prior.entry_price
        entry_date = prior.entry_date or today

    if forced:
        reason = FORCED_KEEP_REASON
    else:
        reason = str(meta.get("reason") or (prior.reason if prior else ""))

    return Position(
        code=code,
        name=str(meta.get("name") or (prior.name if prior else "")),
        industry=str(meta.get("industry") or (prior.industry if prior else "")),
        entry_price=entry_price,
        entry_date=entry_date,
        current_price=current_price,
        roi=_known_roi(code, entry_price, current_price),
        status=STATUS_HOLD if prior is not None else STATUS_NEW,
        reason=reason,
    )


def _select_keepers(positions: List[Position], limit: int) -> List[Position]:
    """Keep at most `limit` keepers, dropping the lowest ROI first.

    Ties go to the earlier keeper. The original order is preserved.
    """
    if len(positions) <= limit:
        return positions
    ranked = sorted(range(len(positions)), key=lambda i: (-positions[i].roi, i))
    kept = set(ranked[:limit])
    return [p for i, p in enumerate(positions) if i in kept]


def reconcile(
    keepers: List[Position],
    proposal: Any,
    fresh_prices: Optional[Dict[str, float]] = None,
    prior_book: Optional[List[Position]] = None,
    leavers: Optional[List[Position]] = None,
    leaver_reasons: Optional[Dict[str, str]] = None,
    today: Optional[str] = None,
    max_positions: Optional[int] = None,
    stop_loss_pct: Optional[float] = None,
) -> ReconcileResult:
    """Produce the final bounded position list and the newly sold list.

    Keepers always survive unless the hard stop-loss fires; leavers never
    survive; new names fill the remaining slots in proposal order. Every
    prior-book code missing from the result is sold exactly once.
    ``prior_book`` defaults to keepers plus leavers.
    """
    today = today or market_today()
    max_positions = MAX_POSITIONS if max_positions is None else max_positions
    stop_loss_pct = RISK["stop_loss_pct"] if stop_loss_pct is None else stop_loss_pct

    prices = {canonical_code(k): v for k, v in (fresh_prices or {}).items()}
    keeper_book = _index_positions(keepers)
    leaver_book = _index_positions(leavers)
    if prior_book is None:
        prior = {**keeper_book, **{c: p for c, p in leaver_book.items() if c not in keeper_book}}
    else:
        prior = _index_positions(prior_book)
        for code, position in keeper_book.items():
            prior.setdefault(code, position)
    reasons = {canonical_code(k): v for k, v in (leaver_reasons or {}).items()}

    # Validate and drop anything the firewall flagged
    entries = []
    for entry in validate_proposal(proposal):
        if entry["code"] in leaver_book:
            logger.info("Proposal kept leaver %s, overridden by firewall", entry["code"])
            continue
        entries.append(entry)

    # Dedupe: first position is kept, last-seen metadata wins
    merged: Dict[str, Dict] = {}
    for entry in entries:
        if entry["code"] in merged:
            merged[entry["code"]].update(entry)
        else:
            merged[entry["code"]] = dict(entry)

    # Keepers first (forced back in when missing), then new names
    keeper_positions = []
    for code, keeper in keeper_book.items():
        forced = code not in merged
        if forced:
            logger.info("Keeper %s missing from proposal, forced back in", code)
            meta = {"currentPrice": keeper.current_price}
        else:
            meta = merged[code]
        keeper_positions.append(_build_position(code, meta, prior.get(code), prices, today, forced))

    other_positions = [
        _build_position(code, meta, prior.get(code), prices, today, forced=False)
        for code, meta in merged.items() if code not in keeper_book
    ]

    # Hard stop-loss takes priority over the keep guarantee
    stopped: Dict[str, str] = {}

    def _stop_loss(positions: List[Position]) -> List[Position]:
        survivors = []
        for position in positions:
            held = position.code in prior
            if held and position.current_price > 0 and position.roi <= -stop_loss_pct:
                logger.warning("STOP LOSS triggered for %s (%.1f%%)", position.code, position.roi)
                stopped[position.code] = stop_loss_reason(position.roi, stop_loss_pct)
                continue
            survivors.append(position)
        return survivors

    keeper_positions = _stop_loss(keeper_positions)
    other_positions = _stop_loss(other_positions)

    # Size cap: keepers have priority over new names
    kept_keepers = _select_keepers(keeper_positions, max_positions)
    overflow = {p.code for p in keeper_positions} - {p.code for p in kept_keepers}
    if overflow:
        logger.warning("Keeper overflow, dropped: %s", ", ".join(sorted(overflow)))
    finalists = kept_keepers + other_positions[:max(0, max_positions - len(kept_keepers))]

    omitted = len(other_positions) - (len(finalists) - len(kept_keepers))
    if omitted > 0:
        logger.info("Size cap reached, %d proposal entries omitted", omitted)

    # Everything that was held and is no longer in the book is sold
    final_codes = {p.code for p in finalists}
    sold = []
    for code, position in prior.items():
        if code in final_codes:
            continue
        exit_price = _resolve_price(code, prices, position.current_price)
        if code in stopped:
            reason = stopped[code]
        elif code in overflow:
            reason = overflow_reason(max_positions)
        elif code in leaver_book:
            reason = reasons.get(code) or LEAVER_REASON
        else:
            reason = REBALANCED_REASON
        sold.append(SoldPosition(
            code=code,
            name=position.name,
            entry_price=position.entry_price,
            exit_price=exit_price,
            roi=_known_roi(code, position.entry_price, exit_price),
            reason=reason,
            sold_date=today,
        ))

    logger.info("Rebalanced. New count: %d, Sold: %d", len(finalists), len(sold))
    return ReconcileResult(finalists=finalists, sold=sold)

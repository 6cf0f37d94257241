"""Portfolio firewall: split held positions into keepers and leavers on technical state alone."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from market_data import HistoryFetcher, fetch_history
from portfolio import Position
from signals import ANALYSIS_FAILED, NEUTRAL, SELL, TechnicalSignal, analyze_code

logger = logging.getLogger(__name__)


@dataclass
class FirewallResult:
    """Keepers must survive the rebalance; leavers may be force-exited."""
    keepers: List[Position] = field(default_factory=list)
    leavers: List[Position] = field(default_factory=list)
    signals: Dict[str, TechnicalSignal] = field(default_factory=dict)

    @property
    def leaver_reasons(self) -> Dict[str, str]:
        """Sell reason per leaver code, for the sold records."""
        return {
            p.code: f"[Hard rule] {self.signals[p.code].technical_reason}"
            for p in self.leavers
        }


def partition(open_positions: List[Position], fetch: HistoryFetcher = None) -> FirewallResult:
    """Classify every open position before any proposal is requested.

    A position is a leaver iff its action is SELL. Positions without a
    technical opinion (missing or short history, or a failed analysis)
    stay keepers.
    """
    fetch = fetch_history if fetch is None else fetch
    result = FirewallResult()

    for position in open_positions:
        try:
            signal = analyze_code(position.code, fetch, held=True)
        except Exception as e:
            logger.warning("Firewall analysis failed for %s: %s", position.code, e)
            signal = TechnicalSignal(code=position.code, action=NEUTRAL, reason=ANALYSIS_FAILED)
        result.signals[position.code] = signal
        if signal.action == SELL:
            result.leavers.append(position)
        else:
            result.keepers.append(position)

    logger.info(
        "Firewall: %d keepers, %d leavers",
        len(result.keepers), len(result.leavers)
    )
    for position in result.leavers:
        logger.info("  Leaver %s: %s", position.code, result.signals[position.code].technical_reason)

    return result

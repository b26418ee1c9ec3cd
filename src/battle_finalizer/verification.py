"""Plunder verification: expected vs observed balances around finalize_duel.

All arithmetic is Decimal in SOL. A mismatch is a data-quality signal only;
the ledger's actual transfer is what the index records.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from battle_finalizer.config import BPS_DENOMINATOR, LAMPORTS_PER_SOL, PipelineConfig
from battle_finalizer.models import PlunderReport

log = logging.getLogger("bf.verification")

_LAMPORTS = Decimal(LAMPORTS_PER_SOL)
_BPS = Decimal(BPS_DENOMINATOR)


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / _LAMPORTS


class ConsistencyVerifier:
    def __init__(self, cfg: PipelineConfig):
        self._spoils_rate = Decimal(cfg.spoils_bps) / _BPS
        self._fee_rate = Decimal(cfg.platform_fee_bps) / _BPS
        self._tolerance = cfg.verification_tolerance

    def expect(self, winner_before: Decimal, loser_before: Decimal) -> PlunderReport:
        """Expected post-finalize values from pre-finalize observations."""
        spoils = loser_before * self._spoils_rate
        total = winner_before + spoils
        fee = total * self._fee_rate
        return PlunderReport(
            winner_before=winner_before,
            loser_before=loser_before,
            spoils=spoils,
            platform_fee=fee,
            winner_expected=total - fee,
            loser_expected=loser_before - spoils,
        )

    def verify(self, report: PlunderReport, winner_actual: Decimal, loser_actual: Decimal) -> PlunderReport:
        """Fill observed values into *report* and flag whether they match."""
        report.winner_actual = winner_actual
        report.loser_actual = loser_actual
        report.observed_spoils = report.loser_before - loser_actual
        report.observed_fee = report.winner_before + report.observed_spoils - winner_actual

        winner_diff = abs(winner_actual - report.winner_expected)
        loser_diff = abs(loser_actual - report.loser_expected)
        report.matches = winner_diff <= self._tolerance and loser_diff <= self._tolerance

        if report.matches:
            log.info(
                "PLUNDER_OK │ winner=%s │ loser=%s │ spoils=%s │ fee=%s",
                winner_actual, loser_actual, report.observed_spoils, report.observed_fee,
            )
        else:
            log.warning(
                "PLUNDER_MISMATCH │ winner expected=%s actual=%s │ loser expected=%s actual=%s",
                report.winner_expected, winner_actual, report.loser_expected, loser_actual,
            )
        return report

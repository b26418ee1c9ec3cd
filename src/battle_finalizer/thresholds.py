"""Victory gate. Pure functions over lamport amounts."""

from __future__ import annotations

from battle_finalizer.config import LAMPORTS_PER_SOL, VictoryThresholds


def victory_achieved(deposited: int, volume: int, thresholds: VictoryThresholds) -> bool:
    """Both the deposit floor (target × tolerance) and the volume floor must be met."""
    return deposited >= thresholds.min_deposit and volume >= thresholds.min_volume


def victory_progress(deposited: int, volume: int, thresholds: VictoryThresholds) -> str:
    """Human-readable progress toward both thresholds, e.g. for precondition errors."""
    dep_pct = 100.0 * deposited / thresholds.min_deposit if thresholds.min_deposit else 100.0
    vol_pct = 100.0 * volume / thresholds.min_volume if thresholds.min_volume else 100.0
    return (
        f"deposited {deposited / LAMPORTS_PER_SOL:.3f}/{thresholds.min_deposit / LAMPORTS_PER_SOL:.3f} SOL "
        f"({dep_pct:.1f}%), volume {volume / LAMPORTS_PER_SOL:.3f}/"
        f"{thresholds.min_volume / LAMPORTS_PER_SOL:.3f} SOL ({vol_pct:.1f}%)"
    )

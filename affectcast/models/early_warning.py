"""Early-warning signals of critical transitions (critical slowing down).

A trajectory approaching a tipping point typically shows, in its most
recent window compared with an earlier one:

- rising lag-1 autocorrelation (slower recovery from perturbations),
- rising variance,
- flickering: the series crosses its own mean unusually often,
- rising connectivity: the dimensions become more correlated.

:func:`detect_early_warnings` compares the first ``window_size`` states
against the last ``window_size`` states and returns one
:class:`EarlyWarningSignal` per detected precursor, strongest first.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from affectcast.constants import DIMENSIONS, EPSILON
from affectcast.models.state import EarlyWarningSignal, PLRNNState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

_AC_RISE: float = 0.1
_AC_MIN_LATE: float = 0.5
_AC_TRANSITION_MIN: float = 0.7  # ETA only reported above this
_MAX_TRANSITION_HOURS: float = 48.0
_VARIANCE_RATIO: float = 1.5
_FLICKER_THRESHOLD: float = 0.3
_FLICKER_TRANSITION_HOURS: float = 12.0
_CONNECTIVITY_RATIO: float = 1.3
_FULL_CONFIDENCE_LENGTH: int = 50

# Per-kind reliability weight multiplied into the length-based confidence
_KIND_CONFIDENCE: dict[str, float] = {
    "autocorrelation": 1.0,
    "variance": 1.0,
    "flickering": 0.6,
    "connectivity": 0.7,
}


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def lag1_autocorrelation(series: np.ndarray) -> float:
    """Lag-1 autocorrelation; 0 for series shorter than 3 or constant."""
    x = np.asarray(series, dtype=np.float64)
    if x.shape[0] < 3:
        return 0.0
    d = x - x.mean()
    denom = float(np.sum(d ** 2))
    if denom <= EPSILON:
        return 0.0
    return float(np.sum(d[:-1] * d[1:]) / denom)


def sample_variance(series: np.ndarray) -> float:
    x = np.asarray(series, dtype=np.float64)
    if x.shape[0] < 2:
        return 0.0
    return float(np.var(x, ddof=1))


def flickering_score(series: np.ndarray) -> float:
    """Excess mean-crossing rate over the white-noise expectation.

    White noise crosses its mean about ``(n - 1) / 2`` times.  The score is
    ``crossings / expected - 1`` floored at 0, so only series that switch
    sides more often than noise score above zero.
    """
    x = np.asarray(series, dtype=np.float64)
    if x.shape[0] < 5:
        return 0.0
    above = x >= x.mean()
    crossings = int(np.count_nonzero(above[1:] != above[:-1]))
    expected = (x.shape[0] - 1) / 2.0
    return max(0.0, crossings / expected - 1.0)


def pearson(x: np.ndarray, y: np.ndarray) -> float:
    if x.shape[0] < 3:
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denom = float(np.sqrt(np.sum(dx ** 2) * np.sum(dy ** 2)))
    if denom <= EPSILON:
        return 0.0
    return float(np.sum(dx * dy) / denom)


def mean_abs_correlation(window: np.ndarray) -> float:
    """Average |Pearson r| over all dimension pairs of a (T, n) window."""
    n = window.shape[1]
    vals = [
        abs(pearson(window[:, i], window[:, j]))
        for i in range(n)
        for j in range(i + 1, n)
    ]
    return float(np.mean(vals)) if vals else 0.0


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def _as_matrix(history: Sequence[PLRNNState] | np.ndarray) -> np.ndarray:
    if isinstance(history, np.ndarray):
        arr = np.asarray(history, dtype=np.float64)
        return arr.reshape(-1, 1) if arr.ndim == 1 else arr
    if len(history) == 0:
        return np.zeros((0, 0))
    return np.vstack([s.latent_state for s in history])


def _confidence(kind: str, length: int) -> float:
    return min(1.0, length / _FULL_CONFIDENCE_LENGTH) * _KIND_CONFIDENCE[kind]


def detect_early_warnings(
    history: Sequence[PLRNNState] | np.ndarray,
    window_size: int,
    dt: float = 1.0,
    labels: Sequence[str] | None = None,
) -> list[EarlyWarningSignal]:
    """Compare the early and late windows of a state history.

    Parameters
    ----------
    history:
        List of :class:`PLRNNState` (latent states are used) or a
        ``(T, n)`` array.
    window_size:
        Length of each comparison window.  At least ``2 * window_size``
        states are required; shorter histories yield no signals.
    dt:
        Hours per step, used for the time-to-transition estimate.
    labels:
        Dimension names; defaults to the standard five.

    Returns
    -------
    list[EarlyWarningSignal]
        Sorted by strength, strongest first.
    """
    data = _as_matrix(history)
    length = data.shape[0]
    if window_size < 1 or length < 2 * window_size:
        return []

    n = data.shape[1]
    names = list(labels) if labels is not None else [
        DIMENSIONS[i] if i < len(DIMENSIONS) else f"dim_{i}" for i in range(n)
    ]
    early = data[:window_size]
    late = data[-window_size:]
    signals: list[EarlyWarningSignal] = []

    for dim in range(n):
        label = names[dim]

        early_ac = lag1_autocorrelation(early[:, dim])
        late_ac = lag1_autocorrelation(late[:, dim])
        if late_ac > early_ac + _AC_RISE and late_ac > _AC_MIN_LATE:
            eta = None
            if late_ac >= _AC_TRANSITION_MIN:
                eta = min(_MAX_TRANSITION_HOURS, dt / max(1.0 - late_ac, EPSILON))
            signals.append(EarlyWarningSignal(
                kind="autocorrelation",
                dimension=label,
                strength=(late_ac - early_ac) / max(1.0 - early_ac, EPSILON),
                time_to_transition=eta,
                confidence=_confidence("autocorrelation", length),
                recommendation=(
                    f"Rising autocorrelation in {label} suggests the state is "
                    f"recovering more slowly and approaching a transition. "
                    f"A preventive intervention is advisable."
                ),
            ))

        early_var = sample_variance(early[:, dim])
        late_var = sample_variance(late[:, dim])
        if late_var > _VARIANCE_RATIO * early_var and late_var > EPSILON:
            signals.append(EarlyWarningSignal(
                kind="variance",
                dimension=label,
                strength=(late_var - early_var) / max(early_var, EPSILON),
                time_to_transition=None,
                confidence=_confidence("variance", length),
                recommendation=(
                    f"Variability of {label} is increasing; the state is "
                    f"becoming less stable."
                ),
            ))

        flicker = flickering_score(late[:, dim])
        if flicker > _FLICKER_THRESHOLD:
            signals.append(EarlyWarningSignal(
                kind="flickering",
                dimension=label,
                strength=flicker,
                time_to_transition=_FLICKER_TRANSITION_HOURS,
                confidence=_confidence("flickering", length),
                recommendation=(
                    f"{label} is flickering between levels, an indication "
                    f"of an imminent switch between states."
                ),
            ))

    if n >= 2:
        early_conn = mean_abs_correlation(early)
        late_conn = mean_abs_correlation(late)
        if late_conn > _CONNECTIVITY_RATIO * early_conn and late_conn > EPSILON:
            signals.append(EarlyWarningSignal(
                kind="connectivity",
                dimension="network",
                strength=(late_conn - early_conn) / max(early_conn, EPSILON),
                time_to_transition=None,
                confidence=_confidence("connectivity", length),
                recommendation=(
                    "Coupling between psychological dimensions is "
                    "strengthening; the system is becoming vulnerable to "
                    "cascading effects."
                ),
            ))

    signals.sort(key=lambda s: s.strength, reverse=True)
    if signals:
        logger.debug(
            "Early warnings over %d states (window %d): %s",
            length, window_size, [(s.kind, s.dimension) for s in signals],
        )
    return signals

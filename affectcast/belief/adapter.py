"""Bridge between the external belief state and the forecasting engines.

Conversions are lossy only where a posterior is missing: absent means
fall back to neutral values (valence 0, arousal 0, dominance 0.5,
risk 0.1, resources 0.5) and absent variances to 0.1.

Horizon policy for the hybrid forecast:

=========  =====  ==========================================  =============
horizon    steps  combination                                 primary
=========  =====  ==========================================  =============
short      3      KalmanFormer only                           kalmanformer
medium     12     equal average, per-dimension CI union       plrnn
long       48     PLRNN mean, CI widened by KalmanFormer CI   plrnn
=========  =====  ==========================================  =============

With a single configured engine every horizon uses that engine, and it
is reported as primary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np

from affectcast.belief.belief_state import BeliefState, Posterior
from affectcast.constants import (
    CI_LEVEL,
    DEFAULT_VARIANCE,
    DIMENSIONS,
    HYBRID_HORIZON_STEPS,
    NEUTRAL_MEANS,
)
from affectcast.models.kalmanformer import KalmanFormerEngine
from affectcast.models.linalg import relu
from affectcast.models.plrnn import PLRNNEngine, resolve_horizon
from affectcast.models.state import (
    AttentionExplanation,
    CausalNetwork,
    ConfidenceInterval,
    EarlyWarningSignal,
    InterventionSimulation,
    KalmanFormerPrediction,
    KalmanFormerState,
    KalmanState,
    ObservationEntry,
    PLRNNPrediction,
    PLRNNState,
)

logger = logging.getLogger(__name__)

_SHORT_MAX_HOURS: float = 6.0
_MEDIUM_MAX_HOURS: float = 24.0
_DEFAULT_EMBED_DIM: int = 64


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------


@dataclass
class HybridPrediction:
    """Unified forecast combining both engines."""

    final_prediction: np.ndarray
    trajectory: np.ndarray  # (steps + 1, 5)
    confidence_interval: ConfidenceInterval
    horizon: str
    hours_ahead: float
    confidence: float
    primary_engine: str
    plrnn_prediction: PLRNNPrediction | None = None
    kalmanformer_prediction: KalmanFormerPrediction | None = None
    early_warning_signals: list[EarlyWarningSignal] = field(default_factory=list)
    attention: AttentionExplanation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "horizon": self.horizon,
            "hours_ahead": self.hours_ahead,
            "primary_engine": self.primary_engine,
            "confidence": float(self.confidence),
            "final_prediction": dict(zip(DIMENSIONS, self.final_prediction.tolist())),
            "confidence_interval": self.confidence_interval.to_dict(),
            "early_warning_signals": [s.to_dict() for s in self.early_warning_signals],
            "attention": self.attention.to_dict() if self.attention else None,
        }


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


def belief_to_observation(belief: BeliefState) -> np.ndarray:
    """Posterior means in dimension order (neutral defaults when missing)."""
    posts = belief.posteriors()
    return np.array([
        posts[d].mean if posts[d] is not None else NEUTRAL_MEANS[d]
        for d in DIMENSIONS
    ], dtype=np.float64)


def belief_to_uncertainty(belief: BeliefState) -> np.ndarray:
    """Posterior variances in dimension order (0.1 when missing)."""
    posts = belief.posteriors()
    return np.array([
        posts[d].variance if posts[d] is not None else DEFAULT_VARIANCE
        for d in DIMENSIONS
    ], dtype=np.float64)


def belief_to_plrnn_state(belief: BeliefState) -> PLRNNState:
    obs = belief_to_observation(belief)
    return PLRNNState(
        latent_state=obs.copy(),
        hidden_activations=relu(obs),
        observed_state=obs.copy(),
        uncertainty=belief_to_uncertainty(belief),
        timestamp=belief.timestamp,
        timestep=0,
    )


def _to_update(means: np.ndarray, variances: np.ndarray) -> dict[str, Posterior]:
    out = {}
    for i, d in enumerate(DIMENSIONS):
        mean = float(means[i]) if i < means.shape[0] else NEUTRAL_MEANS[d]
        var = float(variances[i]) if i < variances.shape[0] else DEFAULT_VARIANCE
        out[d] = Posterior(mean=mean, variance=max(var, 0.0))
    return out


def plrnn_state_to_belief_update(state: PLRNNState) -> dict[str, Posterior]:
    return _to_update(state.observed_state, state.uncertainty)


def belief_to_kalmanformer_state(
    belief: BeliefState,
    engine: KalmanFormerEngine | None = None,
) -> KalmanFormerState:
    """Seed a KalmanFormer state from a belief.

    With an engine the history entry carries a cached embedding; without
    one it is embedded lazily on first use.
    """
    obs = belief_to_observation(belief)
    cov = np.diag(belief_to_uncertainty(belief))
    if engine is not None and engine.initialized:
        return engine.initialize_state(
            obs, belief.timestamp, covariance=cov, confidence=belief.overall_confidence,
        )
    return KalmanFormerState(
        kalman_state=KalmanState.initial(obs, cov, timestamp=belief.timestamp, gain_diagonal=0.5),
        transformer_hidden=np.zeros((0, _DEFAULT_EMBED_DIM)),
        observation_history=[ObservationEntry(observation=obs, timestamp=belief.timestamp)],
        learned_gain=None,
        current_blend_ratio=0.5,
        confidence=float(np.clip(belief.overall_confidence, 0.0, 1.0)),
        timestamp=belief.timestamp,
    )


def kalmanformer_state_to_belief_update(state: KalmanFormerState) -> dict[str, Posterior]:
    ks = state.kalman_state
    return _to_update(ks.state_estimate, np.diag(ks.error_covariance))


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def _plrnn_confidence(pred: PLRNNPrediction) -> float:
    return float(np.clip(1.0 - np.mean(pred.trajectory[-1].uncertainty), 0.0, 1.0))


def _interval_union(a: ConfidenceInterval, b: ConfidenceInterval) -> ConfidenceInterval:
    """Per-dimension union: min of the lower bounds, max of the upper bounds."""
    return ConfidenceInterval(
        lower=np.minimum(a.lower, b.lower),
        upper=np.maximum(a.upper, b.upper),
        level=CI_LEVEL,
    )


def merge_hybrid_predictions(
    plrnn_pred: PLRNNPrediction | None,
    kf_pred: KalmanFormerPrediction | None,
    horizon: str = "medium",
    confidence: float | None = None,
    dt: float = 1.0,
) -> HybridPrediction:
    """Combine engine forecasts according to the horizon policy.

    Parameters
    ----------
    plrnn_pred, kf_pred:
        Forecasts over the same number of steps; either may be *None*.
    horizon:
        ``short``, ``medium`` or ``long``.
    confidence:
        Override; by default derived from the contributing engines.
    dt:
        Hours per step, for ``hours_ahead``.

    Raises
    ------
    ValueError
        If both predictions are missing or the horizon is unknown.
    """
    if horizon not in HYBRID_HORIZON_STEPS:
        raise ValueError(f"Unknown hybrid horizon: {horizon!r}")
    if plrnn_pred is None and kf_pred is None:
        raise ValueError("At least one engine prediction is required")

    use_plrnn = plrnn_pred is not None and (kf_pred is None or horizon != "short")
    use_kf = kf_pred is not None and (plrnn_pred is None or horizon != "long")

    if use_plrnn and use_kf:
        final = 0.5 * (plrnn_pred.mean_prediction + kf_pred.blended_prediction)
        p_traj = np.vstack([s.observed_state for s in plrnn_pred.trajectory])
        k_traj = np.vstack([s.kalman_state.state_estimate for s in kf_pred.trajectory])
        trajectory = 0.5 * (p_traj + k_traj)
        interval = _interval_union(plrnn_pred.confidence_interval, kf_pred.confidence_interval)
        auto_conf = 0.5 * (_plrnn_confidence(plrnn_pred) + kf_pred.confidence)
        steps = plrnn_pred.horizon
    elif use_plrnn:
        final = plrnn_pred.mean_prediction.copy()
        trajectory = np.vstack([s.observed_state for s in plrnn_pred.trajectory])
        interval = plrnn_pred.confidence_interval
        if kf_pred is not None:
            # long horizon: never narrower than the filter's own interval
            interval = _interval_union(interval, kf_pred.confidence_interval)
        auto_conf = _plrnn_confidence(plrnn_pred)
        steps = plrnn_pred.horizon
    else:
        final = kf_pred.blended_prediction.copy()
        trajectory = np.vstack([s.kalman_state.state_estimate for s in kf_pred.trajectory])
        interval = kf_pred.confidence_interval
        auto_conf = kf_pred.confidence
        steps = kf_pred.horizon

    if plrnn_pred is None:
        primary = "kalmanformer"
    elif kf_pred is None or horizon != "short":
        primary = "plrnn"
    else:
        primary = "kalmanformer"

    return HybridPrediction(
        final_prediction=final,
        trajectory=trajectory,
        confidence_interval=interval,
        horizon=horizon,
        hours_ahead=steps * dt,
        confidence=auto_conf if confidence is None else confidence,
        primary_engine=primary,
        plrnn_prediction=plrnn_pred,
        kalmanformer_prediction=kf_pred,
        early_warning_signals=list(plrnn_pred.early_warning_signals) if plrnn_pred else [],
        attention=kf_pred.attention if use_kf else None,
    )


def horizon_category(hours: float) -> str:
    """Map hours ahead to the hybrid policy bucket."""
    if hours <= _SHORT_MAX_HOURS:
        return "short"
    if hours <= _MEDIUM_MAX_HOURS:
        return "medium"
    return "long"


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class BeliefStateAdapter:
    """Runs both engines from a belief state and merges their forecasts.

    Either engine may be absent.  Operations that need a missing engine
    return *None*; that is a capability gap, not an error.
    """

    def __init__(
        self,
        plrnn: PLRNNEngine | None = None,
        kalman_former: KalmanFormerEngine | None = None,
    ) -> None:
        self.plrnn = plrnn
        self.kalman_former = kalman_former

    def set_plrnn_engine(self, engine: PLRNNEngine | None) -> None:
        self.plrnn = engine

    def set_kalman_former_engine(self, engine: KalmanFormerEngine | None) -> None:
        self.kalman_former = engine

    @property
    def dt(self) -> float:
        if self.plrnn is not None:
            return self.plrnn.config.dt
        if self.kalman_former is not None:
            return self.kalman_former.config.dt
        return 1.0

    # Conversions -------------------------------------------------------

    def to_observation(self, belief: BeliefState) -> np.ndarray:
        return belief_to_observation(belief)

    def to_plrnn_state(self, belief: BeliefState) -> PLRNNState:
        return belief_to_plrnn_state(belief)

    def to_kalmanformer_state(self, belief: BeliefState) -> KalmanFormerState:
        return belief_to_kalmanformer_state(belief, self.kalman_former)

    # Forecasting -------------------------------------------------------

    def _predict(self, belief: BeliefState, steps: int, category: str) -> HybridPrediction:
        if self.plrnn is None and self.kalman_former is None:
            raise ValueError("BeliefStateAdapter has no engine configured")

        plrnn_pred = None
        kf_pred = None
        if self.plrnn is not None:
            plrnn_pred = self.plrnn.predict(self.to_plrnn_state(belief), steps)
        if self.kalman_former is not None:
            kf_pred = self.kalman_former.predict(self.to_kalmanformer_state(belief), steps)

        result = merge_hybrid_predictions(plrnn_pred, kf_pred, category, dt=self.dt)
        logger.debug(
            "Hybrid forecast: %s (%d steps), primary=%s",
            category, steps, result.primary_engine,
        )
        return result

    def predict_hybrid(self, belief: BeliefState, horizon: str = "medium") -> HybridPrediction:
        """Forecast ``short`` (3), ``medium`` (12) or ``long`` (48) steps ahead."""
        if horizon not in HYBRID_HORIZON_STEPS:
            raise ValueError(f"Unknown hybrid horizon: {horizon!r}")
        return self._predict(belief, HYBRID_HORIZON_STEPS[horizon], horizon)

    def forecast(
        self,
        belief: BeliefState,
        horizons: Iterable[str] = ("6h", "24h", "72h"),
    ) -> dict[str, HybridPrediction]:
        """Forecasts keyed by named horizons such as ``"6h"`` or ``"3d"``."""
        dt = self.dt
        out = {}
        for label in horizons:
            steps = resolve_horizon(label, dt)
            out[label] = self._predict(belief, steps, horizon_category(steps * dt))
        return out

    # Pass-throughs -----------------------------------------------------

    def extract_causal_network(self, belief: BeliefState | None = None) -> CausalNetwork | None:
        if self.plrnn is None:
            return None
        state = self.to_plrnn_state(belief) if belief is not None else None
        return self.plrnn.extract_causal_network(state)

    def simulate_intervention(
        self,
        belief: BeliefState,
        target: str,
        mode: str,
        magnitude: float,
    ) -> InterventionSimulation | None:
        if self.plrnn is None:
            return None
        return self.plrnn.simulate_intervention(
            self.to_plrnn_state(belief), target, mode, magnitude
        )

    def explain_prediction(self, belief: BeliefState) -> AttentionExplanation | None:
        if self.kalman_former is None:
            return None
        return self.kalman_former.explain(self.to_kalmanformer_state(belief))

"""KalmanFormer: Kalman filter fused with a self-attention encoder.

Each update runs a linear-Gaussian Kalman step (F = H = I, diagonal Q and
R) whose gain either comes from the Riccati formula or from a learned
head conditioned on the attention context, and blends the corrected
estimate with an independent attention prediction::

    x_hybrid = (1 - r) * x_kalman + r * x_attention
    r        = sigmoid(w_blend . c_T + b_blend)

where ``c_T`` is the encoder output for the latest observation.

Robustness features:
- Outlier gating: when the normalised innovation squared (NIS) exceeds
  the chi-square quantile the innovation is shrunk by 10x.
- Adaptive measurement noise: an exponential moving average of the
  innovation sample covariance once enough innovations are held.
- Irregular sampling: process noise scales with the time gap between
  observations, capped at ``max_time_gap``.
- Singular innovation covariance falls back to a scaled-identity gain.

The learned blend predictor is the primary blend mechanism;
:meth:`KalmanFormerEngine.adapt_blend_ratio` maintains the slow,
error-driven global ratio used when ``learned_blend`` is off.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence

import numpy as np
from scipy import stats

from affectcast.config_loader import get_section
from affectcast.constants import CI_LEVEL, CI_Z_SCORE, CLAMP_VALUE, DIMENSIONS, EPSILON
from affectcast.models.attention import AttentionEncoder
from affectcast.models.linalg import (
    compute_kalman_gain,
    relu,
    safe_inverse,
    sanitize,
    sigmoid,
    symmetrize,
)
from affectcast.models.optimizer import AdamOptimizer
from affectcast.models.state import (
    AttentionExplanation,
    AttentionInfluence,
    ConfidenceInterval,
    EngineNotInitializedError,
    KalmanFormerPrediction,
    KalmanFormerState,
    KalmanState,
    ObservationEntry,
    PLRNNState,
    TrainingSample,
    WeightsMeta,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_INITIAL_COVARIANCE: float = 0.1
_OUTLIER_SHRINK: float = 0.1
_MIN_INNOVATIONS_FOR_ADAPTATION: int = 10
_MIN_NOISE: float = 1e-6
_GAIN_OFFDIAG_BIAS: float = -4.0  # sigmoid(-4) ~ 0.018
_HEAD_INIT_SCALE: float = 0.01

_BLEND_RMSE_THRESHOLD: float = 0.5
_BLEND_STEP: float = 0.1
_BLEND_MIN: float = 0.2
_BLEND_MAX: float = 0.8

_TOP_INFLUENCES: int = 5
_PATTERN_WINDOW: int = 5
_RECENCY_RATIO: float = 1.5
_ADJACENT_SHARE: float = 0.5


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class KalmanFormerConfig:
    """Hyper-parameters of the KalmanFormer."""

    state_dim: int = 5
    obs_dim: int = 5
    embed_dim: int = 64
    num_heads: int = 4
    num_layers: int = 2
    context_window: int = 24
    dropout: float = 0.1
    blend_ratio: float = 0.5
    learned_gain: bool = True
    learned_blend: bool = True
    attention_temperature: float = 1.0
    time_embedding: str = "sinusoidal"
    max_time_gap: float = 48.0  # hours
    dt: float = 1.0  # hours per prediction step
    process_noise: float = 0.01
    measurement_noise: float = 0.1
    outlier_probability: float = 0.99
    adaptive_noise: bool = True
    adaptation_rate: float = 0.1
    confidence_decay: float = 0.95
    learning_rate: float = 0.001
    random_state: int = 42

    def __post_init__(self) -> None:
        if self.state_dim != self.obs_dim:
            raise ValueError(
                "state_dim and obs_dim must match (identity observation model), "
                f"got {self.state_dim} and {self.obs_dim}"
            )
        if self.context_window < 1:
            raise ValueError(f"context_window must be >= 1, got {self.context_window}")
        if not 0.0 <= self.blend_ratio <= 1.0:
            raise ValueError(f"blend_ratio must lie in [0, 1], got {self.blend_ratio}")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> "KalmanFormerConfig":
        known = {f.name for f in fields(cls)}
        mapping = dict(mapping or {})
        unknown = sorted(set(mapping) - known)
        if unknown:
            logger.warning("Ignoring unknown KalmanFormer config keys: %s", unknown)
        return cls(**{k: v for k, v in mapping.items() if k in known})

    def merged(self, overrides: Mapping[str, Any] | None) -> "KalmanFormerConfig":
        data = asdict(self)
        data.update(overrides or {})
        return KalmanFormerConfig.from_mapping(data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_kalmanformer_config() -> KalmanFormerConfig:
    """Build a :class:`KalmanFormerConfig` from the ``kalmanformer`` section."""
    return KalmanFormerConfig.from_mapping(get_section("kalmanformer"))


# ---------------------------------------------------------------------------
# Weights and results
# ---------------------------------------------------------------------------


@dataclass
class KalmanFormerWeights:
    """Everything needed to restore a KalmanFormer across restarts."""

    F: np.ndarray
    H: np.ndarray
    Q: np.ndarray
    R: np.ndarray
    encoder: dict[str, np.ndarray]
    heads: dict[str, np.ndarray]
    meta: WeightsMeta = field(default_factory=WeightsMeta)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kalman": {
                "F": self.F.tolist(),
                "H": self.H.tolist(),
                "Q": self.Q.tolist(),
                "R": self.R.tolist(),
            },
            "encoder": {k: v.tolist() for k, v in self.encoder.items()},
            "heads": {k: v.tolist() for k, v in self.heads.items()},
            "meta": self.meta.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KalmanFormerWeights":
        kalman = data["kalman"]
        return cls(
            F=np.array(kalman["F"], dtype=np.float64),
            H=np.array(kalman["H"], dtype=np.float64),
            Q=np.array(kalman["Q"], dtype=np.float64),
            R=np.array(kalman["R"], dtype=np.float64),
            encoder={k: np.array(v, dtype=np.float64) for k, v in data["encoder"].items()},
            heads={k: np.array(v, dtype=np.float64) for k, v in data["heads"].items()},
            meta=WeightsMeta.from_dict(data.get("meta") or {}),
        )


@dataclass
class KalmanFormerTrainingResult:
    """Losses from :meth:`KalmanFormerEngine.train`."""

    loss: float
    kalman_loss: float
    attention_loss: float
    epochs: int
    n_steps: int
    training_time: float
    blend_ratio: float
    error: str | None = None


@dataclass
class _StepDetail:
    """Intermediate quantities of one filter step (used by training)."""

    kalman_estimate: np.ndarray
    attention_prediction: np.ndarray
    context: np.ndarray
    blend_ratio: float


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class KalmanFormerEngine:
    """Hybrid Kalman / self-attention state tracker.

    Parameters
    ----------
    config:
        A :class:`KalmanFormerConfig`, a mapping of overrides, or *None*.
    """

    def __init__(
        self,
        config: KalmanFormerConfig | Mapping[str, Any] | None = None,
    ) -> None:
        if isinstance(config, KalmanFormerConfig):
            self.config = config
        else:
            self.config = KalmanFormerConfig.from_mapping(config)
        self._initialized = False
        self._rng = np.random.default_rng(self.config.random_state)
        self._blend_ratio = self.config.blend_ratio
        self._encoder: AttentionEncoder | None = None
        self._heads: dict[str, np.ndarray] = {}
        self._optimizer: AdamOptimizer | None = None
        self._meta = WeightsMeta()
        self.F = self.H = self.Q = self.R = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def blend_ratio(self) -> float:
        """Global (fallback) blend ratio maintained by :meth:`adapt_blend_ratio`."""
        return self._blend_ratio

    def initialize(
        self,
        config: KalmanFormerConfig | Mapping[str, Any] | None = None,
    ) -> None:
        """Build Kalman matrices, encoder and heads.  A second call is a no-op."""
        if self._initialized:
            if config is not None:
                logger.warning("KalmanFormer already initialized -- config overrides ignored")
            return

        if isinstance(config, KalmanFormerConfig):
            self.config = config
        elif config:
            self.config = self.config.merged(config)
        cfg = self.config
        self._rng = np.random.default_rng(cfg.random_state)
        self._blend_ratio = cfg.blend_ratio

        n = cfg.state_dim
        self.F = np.eye(n)
        self.H = np.eye(cfg.obs_dim, n)
        self.Q = np.eye(n) * cfg.process_noise
        self.R = np.eye(cfg.obs_dim) * cfg.measurement_noise

        self._encoder = AttentionEncoder(
            obs_dim=cfg.obs_dim,
            embed_dim=cfg.embed_dim,
            num_heads=cfg.num_heads,
            num_layers=cfg.num_layers,
            context_window=cfg.context_window,
            time_embedding=cfg.time_embedding,
            temperature=cfg.attention_temperature,
            dropout=cfg.dropout,
            rng=self._rng,
        )
        self._heads = self._init_heads()
        self._optimizer = AdamOptimizer(learning_rate=cfg.learning_rate, gradient_clip=1.0)
        self._meta = WeightsMeta(
            trained_at=None,
            training_samples=0,
            validation_loss=float("inf"),
            config=cfg.to_dict(),
        )
        self._initialized = True
        logger.info(
            "KalmanFormer initialized: embed_dim=%d, heads=%d, layers=%d, window=%d",
            cfg.embed_dim, cfg.num_heads, cfg.num_layers, cfg.context_window,
        )

    def _init_heads(self) -> dict[str, np.ndarray]:
        cfg = self.config
        E, n, m = cfg.embed_dim, cfg.state_dim, cfg.obs_dim
        rng = self._rng

        gain_bias = np.full((n, m), _GAIN_OFFDIAG_BIAS)
        np.fill_diagonal(gain_bias, 0.0)
        ratio = min(max(cfg.blend_ratio, EPSILON), 1.0 - EPSILON)

        return {
            "gain_weights": rng.normal(0.0, _HEAD_INIT_SCALE, size=(E, n * m)),
            "gain_bias": gain_bias.reshape(-1),
            # logit of the configured ratio so the learned blend starts there
            "blend_weights": rng.normal(0.0, _HEAD_INIT_SCALE, size=E),
            "blend_bias": np.array([np.log(ratio / (1.0 - ratio))]),
            "readout_weights": rng.normal(0.0, _HEAD_INIT_SCALE, size=(E, n)),
            "readout_bias": np.zeros(n),
        }

    def _require_initialized(self) -> AttentionEncoder:
        if not self._initialized or self._encoder is None:
            raise EngineNotInitializedError("KalmanFormer")
        return self._encoder

    def load_weights(self, weights: KalmanFormerWeights) -> None:
        """Restore Kalman matrices, encoder and heads (initialises if needed)."""
        if not self._initialized:
            self.initialize()
        n = self.config.state_dim
        for name in ("F", "Q"):
            if getattr(weights, name).shape != (n, n):
                raise ValueError(f"{name} must have shape {(n, n)}")
        self.F = weights.F.copy()
        self.H = weights.H.copy()
        self.Q = weights.Q.copy()
        self.R = weights.R.copy()
        self._encoder.load_params(weights.encoder)
        for name, current in self._heads.items():
            if name not in weights.heads or weights.heads[name].shape != current.shape:
                raise ValueError(f"Head parameter {name} missing or mis-shaped")
        self._heads = {k: weights.heads[k].copy() for k in self._heads}
        self._meta = WeightsMeta.from_dict(weights.meta.to_dict())
        self._optimizer.reset()

    def get_weights(self) -> KalmanFormerWeights:
        encoder = self._require_initialized()
        return KalmanFormerWeights(
            F=self.F.copy(),
            H=self.H.copy(),
            Q=self.Q.copy(),
            R=self.R.copy(),
            encoder={k: v.copy() for k, v in encoder.params.items()},
            heads={k: v.copy() for k, v in self._heads.items()},
            meta=WeightsMeta.from_dict(self._meta.to_dict()),
        )

    # ------------------------------------------------------------------
    # State construction
    # ------------------------------------------------------------------

    def _fit(self, values: Any) -> np.ndarray:
        m = self.config.obs_dim
        v = np.zeros(m)
        arr = np.asarray(values, dtype=np.float64).reshape(-1)[:m]
        v[: arr.shape[0]] = arr
        return sanitize(v, CLAMP_VALUE)

    def _entry(self, observation: np.ndarray, timestamp: datetime) -> ObservationEntry:
        return ObservationEntry(
            observation=observation,
            timestamp=timestamp,
            embedding=self._encoder.embed(observation, timestamp),
        )

    def initialize_state(
        self,
        observation: Sequence[float] | np.ndarray,
        timestamp: datetime | None = None,
        covariance: np.ndarray | None = None,
        confidence: float = 0.5,
    ) -> KalmanFormerState:
        """Start a filter state at ``observation`` with one history entry."""
        self._require_initialized()
        ts = timestamp or datetime.now(timezone.utc)
        obs = self._fit(observation)
        n = self.config.state_dim
        P = np.eye(n) * _INITIAL_COVARIANCE if covariance is None else np.array(covariance, dtype=np.float64)
        entry = self._entry(obs, ts)
        return KalmanFormerState(
            kalman_state=KalmanState.initial(obs, P, timestamp=ts),
            transformer_hidden=np.zeros((0, self.config.embed_dim)),
            observation_history=[entry],
            learned_gain=None,
            current_blend_ratio=self._blend_ratio,
            confidence=float(np.clip(confidence, 0.0, 1.0)),
            timestamp=ts,
        )

    # ------------------------------------------------------------------
    # Filter internals
    # ------------------------------------------------------------------

    def _process_noise(self, gap_hours: float) -> np.ndarray:
        cfg = self.config
        factor = np.clip(gap_hours / cfg.dt, 1.0, max(cfg.max_time_gap / cfg.dt, 1.0))
        return self.Q * factor

    def _kalman_predict(
        self,
        x: np.ndarray,
        P: np.ndarray,
        gap_hours: float,
    ) -> tuple[np.ndarray, np.ndarray]:
        x_pred = self.F @ x
        P_pred = symmetrize(self.F @ P @ self.F.T + self._process_noise(gap_hours))
        return x_pred, P_pred

    def _encode(
        self,
        history: list[ObservationEntry],
        training: bool = False,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Encoded sequence and its last vector (zeros for empty history)."""
        encoder = self._encoder
        if not history:
            return np.zeros((0, encoder.embed_dim)), np.zeros(encoder.embed_dim)
        emb = np.vstack([
            e.embedding if e.embedding is not None else encoder.embed(e.observation, e.timestamp)
            for e in history
        ])
        context, _ = encoder.encode(emb, rng=self._rng if training else None)
        return context, context[-1]

    def _attention_predict(self, history: list[ObservationEntry], last: np.ndarray,
                           fallback: np.ndarray) -> np.ndarray:
        if not history:
            return fallback.copy()
        base = history[-1].observation
        h = self._heads
        return sanitize(base + last @ h["readout_weights"] + h["readout_bias"], CLAMP_VALUE)

    def _learned_gain(self, last: np.ndarray) -> np.ndarray:
        n, m = self.config.state_dim, self.config.obs_dim
        logits = last @ self._heads["gain_weights"] + self._heads["gain_bias"]
        return sigmoid(logits).reshape(n, m)

    def _blend(self, last: np.ndarray) -> float:
        if not self.config.learned_blend:
            return self._blend_ratio
        logit = float(last @ self._heads["blend_weights"] + self._heads["blend_bias"][0])
        return float(sigmoid(logit))

    def _adapt_noise(
        self,
        innovations: list[np.ndarray],
        R_prev: np.ndarray,
    ) -> np.ndarray | None:
        if not self.config.adaptive_noise or len(innovations) < _MIN_INNOVATIONS_FOR_ADAPTATION:
            return None
        sample = np.cov(np.vstack(innovations), rowvar=False)
        sample = np.atleast_2d(sample)
        alpha = self.config.adaptation_rate
        R_new = symmetrize((1.0 - alpha) * R_prev + alpha * sample)
        diag = np.maximum(np.diag(R_new), _MIN_NOISE)
        np.fill_diagonal(R_new, diag)
        return R_new

    def _filter_step(
        self,
        state: KalmanFormerState,
        observation: np.ndarray,
        timestamp: datetime,
        training: bool = False,
    ) -> tuple[KalmanFormerState, _StepDetail]:
        cfg = self.config
        prev = state.kalman_state

        # 1. bounded history
        history = list(state.observation_history)
        history.append(self._entry(observation, timestamp))
        if len(history) > cfg.context_window:
            history = history[-cfg.context_window:]

        # 2. Kalman predict
        gap = (timestamp - state.timestamp).total_seconds() / 3600.0
        x_pred, P_pred = self._kalman_predict(prev.state_estimate, prev.error_covariance, gap)

        # 3. attention context
        context, last = self._encode(history, training=training)

        # 4. gain
        R = prev.adapted_r if prev.adapted_r is not None else self.R
        S = self.H @ P_pred @ self.H.T + R
        fallback = False
        if cfg.learned_gain:
            K = self._learned_gain(last)
        else:
            K, S, fallback = compute_kalman_gain(P_pred, self.H, R)

        # 5. correction with outlier gating
        y = sanitize(observation - self.H @ x_pred)
        nis = float(y @ safe_inverse(S) @ y)
        threshold = float(stats.chi2.ppf(cfg.outlier_probability, cfg.obs_dim))
        is_outlier = bool(np.isfinite(nis) and nis > threshold)
        y_eff = y * _OUTLIER_SHRINK if is_outlier else y
        if is_outlier:
            logger.debug("Outlier observation (NIS=%.2f > %.2f) -- innovation shrunk", nis, threshold)

        x_kalman = sanitize(x_pred + K @ y_eff, CLAMP_VALUE)
        I_KH = np.eye(cfg.state_dim) - K @ self.H
        P = symmetrize(I_KH @ P_pred @ I_KH.T + K @ R @ K.T)
        P = sanitize(P)

        innovations = (list(state.innovation_history) + [y])[-cfg.context_window:]
        adapted_r = self._adapt_noise(innovations, R)
        if adapted_r is None:
            adapted_r = prev.adapted_r

        # 6. attention prediction
        x_attn = self._attention_predict(history, last, x_kalman)

        # 7. blend
        ratio = self._blend(last)
        blended = sanitize((1.0 - ratio) * x_kalman + ratio * x_attn, CLAMP_VALUE)

        # 8. confidence
        agreement = float(np.mean(np.exp(-((x_kalman - x_attn) ** 2))))
        innovation_score = float(np.exp(-np.linalg.norm(y)))
        confidence = 0.5 * (agreement + innovation_score)

        kalman_state = KalmanState(
            state_estimate=blended,
            error_covariance=P,
            predicted_state=x_pred,
            predicted_covariance=P_pred,
            innovation=y,
            innovation_covariance=S,
            kalman_gain=K,
            normalized_innovation_squared=nis,
            is_outlier=is_outlier,
            adapted_r=adapted_r,
            gain_fallback=fallback,
            timestep=prev.timestep + 1,
            timestamp=timestamp,
        )
        new_state = KalmanFormerState(
            kalman_state=kalman_state,
            transformer_hidden=context,
            observation_history=history,
            learned_gain=K if cfg.learned_gain else None,
            current_blend_ratio=ratio,
            confidence=confidence,
            timestamp=timestamp,
            innovation_history=innovations,
        )
        detail = _StepDetail(
            kalman_estimate=x_kalman,
            attention_prediction=x_attn,
            context=last,
            blend_ratio=ratio,
        )
        return new_state, detail

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def update(
        self,
        state: KalmanFormerState,
        observation: Sequence[float] | np.ndarray,
        timestamp: datetime | None = None,
    ) -> KalmanFormerState:
        """Incorporate one real observation; returns a new state."""
        self._require_initialized()
        ts = timestamp or state.timestamp + timedelta(hours=self.config.dt)
        new_state, _ = self._filter_step(state, self._fit(observation), ts)
        return new_state

    def predict(self, state: KalmanFormerState, horizon: int) -> KalmanFormerPrediction:
        """Roll the hybrid forward ``horizon`` steps on pseudo-observations.

        Each step Kalman-predicts (covariance grows by Q, no correction),
        forms the attention prediction from the current history, blends
        the two and appends the blend to the history.  Confidence decays
        by ``confidence_decay`` per step.
        """
        self._require_initialized()
        if horizon < 0:
            raise ValueError(f"Horizon must be non-negative, got {horizon}")
        cfg = self.config

        trajectory = [state]
        current = state
        x_k = state.kalman_state.state_estimate.copy()
        x_a = state.kalman_state.state_estimate.copy()

        for _ in range(horizon):
            prev = current.kalman_state
            x_k, P_pred = self._kalman_predict(prev.state_estimate, prev.error_covariance, cfg.dt)
            context, last = self._encode(current.observation_history)
            x_a = self._attention_predict(current.observation_history, last, x_k)
            ratio = self._blend(last)
            blended = sanitize((1.0 - ratio) * x_k + ratio * x_a, CLAMP_VALUE)

            ts = current.timestamp + timedelta(hours=cfg.dt)
            history = (list(current.observation_history) + [self._entry(blended, ts)])
            history = history[-cfg.context_window:]

            kalman_state = KalmanState(
                state_estimate=blended,
                error_covariance=P_pred,
                predicted_state=x_k,
                predicted_covariance=P_pred,
                innovation=np.zeros(cfg.obs_dim),
                innovation_covariance=self.H @ P_pred @ self.H.T + self.R,
                kalman_gain=prev.kalman_gain,
                adapted_r=prev.adapted_r,
                timestep=prev.timestep + 1,
                timestamp=ts,
            )
            current = KalmanFormerState(
                kalman_state=kalman_state,
                transformer_hidden=context,
                observation_history=history,
                learned_gain=current.learned_gain,
                current_blend_ratio=ratio,
                confidence=current.confidence * cfg.confidence_decay,
                timestamp=ts,
                innovation_history=list(current.innovation_history),
            )
            trajectory.append(current)

        final = trajectory[-1]
        mean = final.kalman_state.state_estimate.copy()
        half = CI_Z_SCORE * np.sqrt(np.maximum(np.diag(final.kalman_state.error_covariance), 0.0))
        return KalmanFormerPrediction(
            state_estimate=mean,
            covariance=final.kalman_state.error_covariance.copy(),
            kalman_contribution=x_k,
            attention_contribution=x_a,
            blended_prediction=mean.copy(),
            confidence_interval=ConfidenceInterval(lower=mean - half, upper=mean + half, level=CI_LEVEL),
            attention=self.explain(final),
            horizon=horizon,
            trajectory=trajectory,
            confidence=final.confidence,
        )

    def explain(self, state: KalmanFormerState) -> AttentionExplanation:
        """Summarise which past observations drive the latest step."""
        encoder = self._require_initialized()
        history = state.observation_history
        if not history:
            return AttentionExplanation(weights=np.zeros((0, 0)))

        emb = np.vstack([
            e.embedding if e.embedding is not None else encoder.embed(e.observation, e.timestamp)
            for e in history
        ])
        weights = encoder.attention_matrix(emb)
        last_row = weights[-1]

        order = np.argsort(-last_row, kind="stable")[:_TOP_INFLUENCES]
        top = []
        for i in order:
            dim = int(np.argmax(np.abs(history[i].observation)))
            top.append(AttentionInfluence(
                index=int(i),
                timestamp=history[i].timestamp,
                weight=float(last_row[i]),
                dimension=DIMENSIONS[dim] if dim < len(DIMENSIONS) else f"dim_{dim}",
            ))

        recent = float(np.mean(last_row[-_PATTERN_WINDOW:]))
        early = float(np.mean(last_row[:_PATTERN_WINDOW]))
        if recent > _RECENCY_RATIO * early:
            pattern = "recency_bias"
        elif last_row.shape[0] >= 3 and last_row[-2:].sum() / max(last_row.sum(), EPSILON) < _ADJACENT_SHARE:
            pattern = "pattern_matching"
        else:
            pattern = "uniform"

        return AttentionExplanation(weights=weights, top_influences=top, pattern=pattern)

    def adapt_blend_ratio(
        self,
        predictions: Sequence[Sequence[float]] | np.ndarray,
        actuals: Sequence[Sequence[float]] | np.ndarray,
    ) -> float:
        """Error-driven update of the global blend ratio.

        RMSE above 0.5 moves the ratio 0.1 toward the attention model;
        RMSE below 0.25 moves it 0.1 toward the filter.  The result is
        clamped to [0.2, 0.8], stored, and returned.  Mismatched or empty
        input leaves the ratio unchanged.
        """
        p = np.asarray(predictions, dtype=np.float64)
        a = np.asarray(actuals, dtype=np.float64)
        if p.size == 0 or p.shape != a.shape:
            return self._blend_ratio

        rmse = float(np.sqrt(np.mean((p - a) ** 2)))
        ratio = self._blend_ratio
        if rmse > _BLEND_RMSE_THRESHOLD:
            ratio += _BLEND_STEP
        elif rmse < 0.5 * _BLEND_RMSE_THRESHOLD:
            ratio -= _BLEND_STEP
        self._blend_ratio = float(np.clip(ratio, _BLEND_MIN, _BLEND_MAX))
        logger.debug("Blend ratio adapted to %.2f (RMSE %.3f)", self._blend_ratio, rmse)
        return self._blend_ratio

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(
        self,
        samples: Sequence[TrainingSample],
        epochs: int = 1,
    ) -> KalmanFormerTrainingResult:
        """Fit the readout and blend heads; the encoder stays frozen.

        Targets are the sample's ``ground_truth`` at each step when given
        (filtering loss), otherwise the next observation (one-step-ahead
        loss).  One Adam step is taken per sample per epoch.
        """
        self._require_initialized()
        start = time.perf_counter()
        n = self.config.state_dim
        total = k_total = a_total = 0.0
        count = 0

        for _ in range(max(epochs, 1)):
            for sample in samples:
                obs = sample.observations
                if len(sample) < 2:
                    continue
                ts = list(sample.timestamps) or [
                    datetime.now(timezone.utc) + timedelta(hours=self.config.dt * i)
                    for i in range(len(sample))
                ]
                state = self.initialize_state(obs[0], ts[0])
                grads = {k: np.zeros_like(v) for k, v in self._heads.items()
                         if k.startswith(("readout", "blend"))}
                steps = 0

                for t in range(1, len(sample)):
                    state, d = self._filter_step(state, self._fit(obs[t]), ts[t], training=True)
                    if sample.ground_truth is not None and t < len(sample.ground_truth):
                        target = self._fit(sample.ground_truth[t])
                    elif sample.ground_truth is None and t + 1 < len(sample):
                        target = self._fit(obs[t + 1])
                    else:
                        continue

                    r = d.blend_ratio
                    blended = (1.0 - r) * d.kalman_estimate + r * d.attention_prediction
                    k_loss = float(np.mean((d.kalman_estimate - target) ** 2))
                    a_loss = float(np.mean((d.attention_prediction - target) ** 2))
                    total += float(np.mean((blended - target) ** 2))
                    k_total += k_loss
                    a_total += a_loss
                    count += 1
                    steps += 1

                    g = 2.0 * (blended - target) / n
                    g_attn = r * g
                    grads["readout_weights"] += np.outer(d.context, g_attn)
                    grads["readout_bias"] += g_attn
                    if self.config.learned_blend:
                        d_logit = float(g @ (d.attention_prediction - d.kalman_estimate)) * r * (1.0 - r)
                        grads["blend_weights"] += d_logit * d.context
                        grads["blend_bias"] += d_logit

                if steps:
                    self._optimizer.step(self._heads, {k: v / steps for k, v in grads.items()})

        if count == 0:
            return KalmanFormerTrainingResult(
                loss=float("inf"),
                kalman_loss=float("inf"),
                attention_loss=float("inf"),
                epochs=epochs,
                n_steps=0,
                training_time=time.perf_counter() - start,
                blend_ratio=self._blend_ratio,
                error="no sample produced a training target",
            )

        loss = total / count
        self._meta.training_samples += len(samples)
        self._meta.trained_at = datetime.now(timezone.utc)
        self._meta.validation_loss = loss
        logger.info(
            "KalmanFormer training: %d steps, loss=%.5f (kalman %.5f, attention %.5f)",
            count, loss, k_total / count, a_total / count,
        )
        return KalmanFormerTrainingResult(
            loss=loss,
            kalman_loss=k_total / count,
            attention_loss=a_total / count,
            epochs=epochs,
            n_steps=count,
            training_time=time.perf_counter() - start,
            blend_ratio=self._blend_ratio,
        )

    # ------------------------------------------------------------------
    # Interoperability
    # ------------------------------------------------------------------

    def to_plrnn_state(self, state: KalmanFormerState) -> PLRNNState:
        estimate = sanitize(state.kalman_state.state_estimate, CLAMP_VALUE)
        return PLRNNState(
            latent_state=estimate.copy(),
            hidden_activations=relu(estimate),
            observed_state=estimate.copy(),
            uncertainty=np.maximum(np.diag(state.kalman_state.error_covariance), 0.0),
            timestamp=state.timestamp,
            timestep=state.kalman_state.timestep,
        )

    def from_plrnn_state(self, plrnn_state: PLRNNState) -> KalmanFormerState:
        self._require_initialized()
        u = np.maximum(self._fit(plrnn_state.uncertainty), 0.0)
        state = self.initialize_state(
            plrnn_state.observed_state,
            plrnn_state.timestamp,
            covariance=np.diag(u),
            confidence=1.0 - float(np.mean(u)),
        )
        state.kalman_state.timestep = plrnn_state.timestep
        return state

    def get_complexity_metrics(self) -> dict[str, int]:
        if not self._initialized or self._encoder is None:
            return {
                "total_parameters": 0,
                "kalman_parameters": 0,
                "transformer_parameters": 0,
                "head_parameters": 0,
                "effective_context_length": 0,
            }
        kalman = int(self.F.size + self.H.size + self.Q.size + self.R.size)
        transformer = self._encoder.parameter_count()
        heads = int(sum(v.size for v in self._heads.values()))
        return {
            "total_parameters": kalman + transformer + heads,
            "kalman_parameters": kalman,
            "transformer_parameters": transformer,
            "head_parameters": heads,
            "effective_context_length": self.config.context_window,
        }


def create_kalmanformer_engine(
    config: KalmanFormerConfig | Mapping[str, Any] | None = None,
) -> KalmanFormerEngine:
    """Construct and initialise a :class:`KalmanFormerEngine`."""
    engine = KalmanFormerEngine(config)
    engine.initialize()
    return engine

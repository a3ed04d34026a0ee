"""Shared value types for the forecasting engines.

Every engine operation takes and returns these containers.  Arrays are
``float64`` numpy vectors/matrices whose shapes are fixed at construction
(``latent_dim`` for the PLRNN, ``state_dim``/``obs_dim`` for the filter)
and validated once in ``__post_init__``.

Containers that cross the persistence boundary (weight bundles, result
objects) expose ``to_dict()`` producing JSON-safe structures.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np
import pandas as pd

from affectcast.constants import CI_LEVEL, DIMENSIONS


class EngineNotInitializedError(RuntimeError):
    """Raised when an engine operation is called before ``initialize()``."""

    def __init__(self, engine: str) -> None:
        self.engine = engine
        super().__init__(
            f"{engine} is not initialized -- call initialize() or "
            f"load_weights() before using it"
        )


def _vec(values: Any, name: str, size: int | None = None) -> np.ndarray:
    arr = np.array(values, dtype=np.float64).reshape(-1)
    if size is not None and arr.shape[0] != size:
        raise ValueError(f"{name} must have length {size}, got {arr.shape[0]}")
    return arr


def _mat(values: Any, name: str, shape: tuple[int, int]) -> np.ndarray:
    arr = np.array(values, dtype=np.float64)
    if arr.shape != shape:
        raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
    return arr


def _float_to_json(value: float | None) -> float | str | None:
    if value is None:
        return None
    if math.isinf(value) or math.isnan(value):
        return str(value)
    return float(value)


def _float_from_json(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _dim_label(index: int) -> str:
    return DIMENSIONS[index] if index < len(DIMENSIONS) else f"dim_{index}"


# ---------------------------------------------------------------------------
# PLRNN state and weights
# ---------------------------------------------------------------------------


@dataclass
class PLRNNState:
    """One timestep of the nonlinear dynamics engine."""

    latent_state: np.ndarray
    hidden_activations: np.ndarray
    observed_state: np.ndarray
    uncertainty: np.ndarray
    timestamp: datetime
    timestep: int = 0

    def __post_init__(self) -> None:
        self.latent_state = _vec(self.latent_state, "latent_state")
        n = self.latent_state.shape[0]
        self.hidden_activations = _vec(self.hidden_activations, "hidden_activations")
        self.observed_state = _vec(self.observed_state, "observed_state", n)
        self.uncertainty = _vec(self.uncertainty, "uncertainty", n)
        if np.any(self.uncertainty < 0):
            raise ValueError("uncertainty must be non-negative")

    @property
    def dim(self) -> int:
        return int(self.latent_state.shape[0])

    def copy(self) -> "PLRNNState":
        return PLRNNState(
            latent_state=self.latent_state.copy(),
            hidden_activations=self.hidden_activations.copy(),
            observed_state=self.observed_state.copy(),
            uncertainty=self.uncertainty.copy(),
            timestamp=self.timestamp,
            timestep=self.timestep,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "latent_state": self.latent_state.tolist(),
            "hidden_activations": self.hidden_activations.tolist(),
            "observed_state": self.observed_state.tolist(),
            "uncertainty": self.uncertainty.tolist(),
            "timestamp": self.timestamp.isoformat(),
            "timestep": self.timestep,
        }


@dataclass
class WeightsMeta:
    """Provenance attached to a weight bundle."""

    trained_at: datetime | None = None
    training_samples: int = 0
    validation_loss: float | None = None
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trained_at": self.trained_at.isoformat() if self.trained_at else None,
            "training_samples": self.training_samples,
            "validation_loss": _float_to_json(self.validation_loss),
            "config": dict(self.config),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WeightsMeta":
        trained_at = data.get("trained_at")
        return cls(
            trained_at=datetime.fromisoformat(trained_at) if trained_at else None,
            training_samples=int(data.get("training_samples", 0)),
            validation_loss=_float_from_json(data.get("validation_loss")),
            config=dict(data.get("config") or {}),
        )


@dataclass
class PLRNNWeights:
    """Parameter bundle of the PLRNN.

    Shapes (n = ``latent_dim``, k = number of dendritic bases):

    - ``A``: (n,) diagonal self-dynamics
    - ``W``: (n, n) off-diagonal coupling, diagonal held at zero
    - ``B``: (n, n) latent -> observed projection
    - ``C``: (n, n) external input coupling
    - ``dendritic_weights``: (k, n) basis projections of z
    - ``dendritic_readout``: (n, k) basis -> latent readout
    - ``bias_latent``, ``bias_observed``: (n,)
    """

    A: np.ndarray
    W: np.ndarray
    B: np.ndarray
    C: np.ndarray
    dendritic_weights: np.ndarray
    dendritic_readout: np.ndarray
    bias_latent: np.ndarray
    bias_observed: np.ndarray
    meta: WeightsMeta = field(default_factory=WeightsMeta)

    def __post_init__(self) -> None:
        self.A = _vec(self.A, "A")
        n = self.A.shape[0]
        self.W = _mat(self.W, "W", (n, n))
        self.B = _mat(self.B, "B", (n, n))
        self.C = _mat(self.C, "C", (n, n))
        self.dendritic_weights = np.array(self.dendritic_weights, dtype=np.float64)
        if self.dendritic_weights.ndim != 2 or self.dendritic_weights.shape[1] != n:
            raise ValueError(
                f"dendritic_weights must have shape (k, {n}), "
                f"got {self.dendritic_weights.shape}"
            )
        k = self.dendritic_weights.shape[0]
        self.dendritic_readout = _mat(self.dendritic_readout, "dendritic_readout", (n, k))
        self.bias_latent = _vec(self.bias_latent, "bias_latent", n)
        self.bias_observed = _vec(self.bias_observed, "bias_observed", n)

    @property
    def latent_dim(self) -> int:
        return int(self.A.shape[0])

    @property
    def n_bases(self) -> int:
        return int(self.dendritic_weights.shape[0])

    def matrices(self) -> dict[str, np.ndarray]:
        """Named view of every trainable array (same objects, not copies)."""
        return {
            "A": self.A,
            "W": self.W,
            "B": self.B,
            "C": self.C,
            "dendritic_weights": self.dendritic_weights,
            "dendritic_readout": self.dendritic_readout,
            "bias_latent": self.bias_latent,
            "bias_observed": self.bias_observed,
        }

    def copy(self) -> "PLRNNWeights":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {k: v.tolist() for k, v in self.matrices().items()}
        out["meta"] = self.meta.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PLRNNWeights":
        return cls(
            A=data["A"],
            W=data["W"],
            B=data["B"],
            C=data["C"],
            dendritic_weights=data["dendritic_weights"],
            dendritic_readout=data["dendritic_readout"],
            bias_latent=data["bias_latent"],
            bias_observed=data["bias_observed"],
            meta=WeightsMeta.from_dict(data.get("meta") or {}),
        )


# ---------------------------------------------------------------------------
# Kalman / attention state
# ---------------------------------------------------------------------------


@dataclass
class KalmanState:
    """Linear-Gaussian filter state plus outlier/adaptation diagnostics."""

    state_estimate: np.ndarray
    error_covariance: np.ndarray
    predicted_state: np.ndarray
    predicted_covariance: np.ndarray
    innovation: np.ndarray
    innovation_covariance: np.ndarray
    kalman_gain: np.ndarray
    normalized_innovation_squared: float = 0.0
    is_outlier: bool = False
    adapted_r: np.ndarray | None = None
    gain_fallback: bool = False
    timestep: int = 0
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        self.state_estimate = _vec(self.state_estimate, "state_estimate")
        n = self.state_estimate.shape[0]
        self.error_covariance = _mat(self.error_covariance, "error_covariance", (n, n))
        self.predicted_state = _vec(self.predicted_state, "predicted_state", n)
        self.predicted_covariance = _mat(
            self.predicted_covariance, "predicted_covariance", (n, n)
        )
        self.innovation = _vec(self.innovation, "innovation")
        m = self.innovation.shape[0]
        self.innovation_covariance = _mat(
            self.innovation_covariance, "innovation_covariance", (m, m)
        )
        self.kalman_gain = _mat(self.kalman_gain, "kalman_gain", (n, m))

    @classmethod
    def initial(
        cls,
        estimate: np.ndarray,
        covariance: np.ndarray,
        timestamp: datetime | None = None,
        gain_diagonal: float = 0.0,
    ) -> "KalmanState":
        estimate = np.array(estimate, dtype=np.float64)
        covariance = np.array(covariance, dtype=np.float64)
        n = estimate.shape[0]
        return cls(
            state_estimate=estimate,
            error_covariance=covariance,
            predicted_state=estimate.copy(),
            predicted_covariance=covariance.copy(),
            innovation=np.zeros(n),
            innovation_covariance=covariance.copy(),
            kalman_gain=np.eye(n) * gain_diagonal,
            timestamp=timestamp,
        )

    def copy(self) -> "KalmanState":
        return copy.deepcopy(self)


@dataclass
class ObservationEntry:
    """One item in the bounded observation history."""

    observation: np.ndarray
    timestamp: datetime
    embedding: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.observation = _vec(self.observation, "observation")


@dataclass
class KalmanFormerState:
    """Hybrid filter/encoder state returned by every KalmanFormer step."""

    kalman_state: KalmanState
    transformer_hidden: np.ndarray  # (T, embed_dim)
    observation_history: list[ObservationEntry]
    learned_gain: np.ndarray | None
    current_blend_ratio: float
    confidence: float
    timestamp: datetime
    innovation_history: list[np.ndarray] = field(default_factory=list)

    @property
    def estimate(self) -> np.ndarray:
        return self.kalman_state.state_estimate


# ---------------------------------------------------------------------------
# Predictions
# ---------------------------------------------------------------------------


@dataclass
class ConfidenceInterval:
    lower: np.ndarray
    upper: np.ndarray
    level: float = CI_LEVEL

    @property
    def width(self) -> np.ndarray:
        return self.upper - self.lower

    def to_dict(self) -> dict[str, Any]:
        return {
            "lower": np.asarray(self.lower).tolist(),
            "upper": np.asarray(self.upper).tolist(),
            "level": self.level,
        }


@dataclass
class EarlyWarningSignal:
    """A statistical precursor of a critical transition."""

    kind: str  # autocorrelation | variance | flickering | connectivity
    dimension: str
    strength: float
    time_to_transition: float | None
    confidence: float
    recommendation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "dimension": self.dimension,
            "strength": float(self.strength),
            "time_to_transition": self.time_to_transition,
            "confidence": float(self.confidence),
            "recommendation": self.recommendation,
        }


@dataclass
class PLRNNPrediction:
    """Multi-step PLRNN forecast."""

    trajectory: list[PLRNNState]
    mean_prediction: np.ndarray
    confidence_interval: ConfidenceInterval
    variance: np.ndarray  # (len(trajectory), latent_dim)
    early_warning_signals: list[EarlyWarningSignal] = field(default_factory=list)
    horizon: int = 0
    source: str = "plrnn"

    def to_frame(self) -> pd.DataFrame:
        """Observed trajectory as a DataFrame indexed by timestamp."""
        n = self.mean_prediction.shape[0]
        cols = [_dim_label(i) for i in range(n)]
        return pd.DataFrame(
            [s.observed_state for s in self.trajectory],
            index=pd.DatetimeIndex([s.timestamp for s in self.trajectory], name="timestamp"),
            columns=cols,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "horizon": self.horizon,
            "source": self.source,
            "mean_prediction": self.mean_prediction.tolist(),
            "confidence_interval": self.confidence_interval.to_dict(),
            "trajectory": [s.observed_state.tolist() for s in self.trajectory],
            "early_warning_signals": [s.to_dict() for s in self.early_warning_signals],
        }


@dataclass
class AttentionInfluence:
    index: int
    timestamp: datetime
    weight: float
    dimension: str


@dataclass
class AttentionExplanation:
    """Which past observations the encoder attends to for the latest step."""

    weights: np.ndarray  # (T, T), averaged over heads
    top_influences: list[AttentionInfluence] = field(default_factory=list)
    pattern: str = "uniform"  # recency_bias | pattern_matching | uniform

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "top_influences": [
                {
                    "index": t.index,
                    "timestamp": t.timestamp.isoformat(),
                    "weight": float(t.weight),
                    "dimension": t.dimension,
                }
                for t in self.top_influences
            ],
        }


@dataclass
class KalmanFormerPrediction:
    """Multi-step KalmanFormer forecast."""

    state_estimate: np.ndarray
    covariance: np.ndarray
    kalman_contribution: np.ndarray
    attention_contribution: np.ndarray
    blended_prediction: np.ndarray
    confidence_interval: ConfidenceInterval
    attention: AttentionExplanation | None
    horizon: int
    trajectory: list[KalmanFormerState]
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "horizon": self.horizon,
            "blended_prediction": self.blended_prediction.tolist(),
            "kalman_contribution": self.kalman_contribution.tolist(),
            "attention_contribution": self.attention_contribution.tolist(),
            "confidence_interval": self.confidence_interval.to_dict(),
            "confidence": float(self.confidence),
            "attention": self.attention.to_dict() if self.attention else None,
        }


# ---------------------------------------------------------------------------
# Causal network and intervention simulation
# ---------------------------------------------------------------------------


@dataclass
class CausalNode:
    id: str
    label: str
    self_weight: float
    centrality: float
    value: float = 0.0


@dataclass
class CausalEdge:
    source: str
    target: str
    weight: float
    lag: float
    significance: float


@dataclass
class CausalNetwork:
    """Weighted directed graph over the latent dimensions."""

    nodes: list[CausalNode] = field(default_factory=list)
    edges: list[CausalEdge] = field(default_factory=list)
    density: float = 0.0
    central_node: str | None = None
    feedback_loops: list[tuple[str, str]] = field(default_factory=list)

    def edges_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [vars(e) for e in self.edges],
            columns=["source", "target", "weight", "lag", "significance"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [vars(n).copy() for n in self.nodes],
            "edges": [vars(e).copy() for e in self.edges],
            "metrics": {
                "density": self.density,
                "central_node": self.central_node,
                "feedback_loops": [list(p) for p in self.feedback_loops],
            },
        }


@dataclass
class InterventionSimulation:
    """Counterfactual response to a sustained input on one dimension."""

    target: str
    mode: str
    magnitude: float
    effects: dict[str, float] = field(default_factory=dict)
    time_to_peak: float = 0.0
    duration: float = 0.0
    side_effects: list[tuple[str, float]] = field(default_factory=list)
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": {
                "dimension": self.target,
                "intervention": self.mode,
                "magnitude": self.magnitude,
            },
            "response": {
                "effects": {k: float(v) for k, v in self.effects.items()},
                "time_to_peak": self.time_to_peak,
                "duration": self.duration,
                "side_effects": [
                    {"dimension": d, "effect": float(e)} for d, e in self.side_effects
                ],
            },
            "confidence": self.confidence,
        }


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------


@dataclass
class TrainingSample:
    """One observation sequence for training."""

    observations: np.ndarray  # (T, dim)
    timestamps: list[datetime] = field(default_factory=list)
    inputs: np.ndarray | None = None  # (T, dim) external inputs, optional
    ground_truth: np.ndarray | None = None  # (T, dim) latent targets, optional
    user_id: str | None = None

    def __post_init__(self) -> None:
        obs = np.array(self.observations, dtype=np.float64)
        if obs.ndim == 1:
            obs = obs.reshape(1, -1) if obs.size else obs.reshape(0, 0)
        self.observations = obs
        if self.inputs is not None:
            self.inputs = np.array(self.inputs, dtype=np.float64)
        if self.ground_truth is not None:
            self.ground_truth = np.array(self.ground_truth, dtype=np.float64)

    def __len__(self) -> int:
        return int(self.observations.shape[0])


@dataclass
class TrainingResult:
    """Outcome of an online, batch or multi-epoch training call."""

    loss: float
    validation_loss: float
    epochs: int
    training_time: float  # seconds
    converged: bool
    weights: PLRNNWeights | None = None
    loss_history: list[float] = field(default_factory=list)
    cancelled: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "loss": _float_to_json(self.loss),
            "validation_loss": _float_to_json(self.validation_loss),
            "epochs": self.epochs,
            "training_time": self.training_time,
            "converged": self.converged,
            "cancelled": self.cancelled,
            "loss_history": [_float_to_json(v) for v in self.loss_history],
            "error": self.error,
        }

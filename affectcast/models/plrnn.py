"""Piecewise-linear recurrent neural network (PLRNN) dynamics engine.

Advances a 5-dimensional latent psychological state with the recurrence::

    z' = A * z + W @ relu(z) + R @ relu(D @ z) + C @ u + b_z
    x' = B @ z' + b_x

where ``A`` is a diagonal self-dynamics vector, ``W`` a sparse
off-diagonal coupling matrix, ``D``/``R`` the dendritic basis and its
readout, ``C`` the external-input coupling and ``B`` the output
projection.  Both ``z'`` and ``x'`` are sanitised (non-finite -> 0) and
clamped to ``[-clamp_value, clamp_value]``.

Key features:
- Multi-step prediction with growing per-dimension uncertainty and 95% CI.
- Horizon-dependent hybrid prediction with an attached KalmanFormer.
- Causal-network extraction from ``A`` and ``W``.
- Counterfactual intervention simulation.
- Early-warning signal detection (critical slowing down).
- Online / batch training: analytic gradients, Adam, L1 on ``W``,
  L2 on everything, elementwise clipping, probabilistic teacher forcing.

Top-level entry points:
    ``PLRNNEngine`` -- the engine.
    ``create_plrnn_engine`` -- construct and initialise in one call.
    ``load_plrnn_config`` -- config from ``config/engine_config.yml``.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

import numpy as np

from affectcast.config_loader import get_section
from affectcast.constants import (
    CI_LEVEL,
    CI_Z_SCORE,
    DIMENSION_INDEX,
    DIMENSIONS,
    EPSILON,
    HYBRID_HORIZON_STEPS,
    INTERVENTION_HORIZON,
)
from affectcast.models.early_warning import detect_early_warnings
from affectcast.models.linalg import power_iteration, relu, sanitize
from affectcast.models.optimizer import AdamOptimizer
from affectcast.models.state import (
    CausalEdge,
    CausalNetwork,
    CausalNode,
    ConfidenceInterval,
    EarlyWarningSignal,
    EngineNotInitializedError,
    InterventionSimulation,
    PLRNNPrediction,
    PLRNNState,
    PLRNNWeights,
    TrainingResult,
    TrainingSample,
    WeightsMeta,
)

if TYPE_CHECKING:
    from affectcast.models.kalmanformer import KalmanFormerEngine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_ONLINE_CONVERGENCE: float = 0.1
_BATCH_CONVERGENCE: float = 0.05
_W_DENSITY: float = 0.2  # fraction of non-zero couplings at init
_NEAR_ZERO: float = 0.01  # |w| below this counts as sparse
_EFFECT_DECAY_FRACTION: float = 0.1
_SIDE_EFFECT_THRESHOLD: float = 0.1
_STABILIZE_FACTOR: float = 0.5
_MAX_EW_WINDOW: int = 5

_HORIZON_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([hd])\s*$", re.IGNORECASE)

INTERVENTION_MODES: tuple[str, ...] = ("increase", "decrease", "stabilize")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class PLRNNConfig:
    """Hyper-parameters of the PLRNN engine."""

    latent_dim: int = 5
    connectivity: str = "dendritic"  # dendritic | sparse
    dendritic_bases: int = 8
    dt: float = 1.0  # hours per step
    learning_rate: float = 0.001
    l1_regularization: float = 0.01
    l2_regularization: float = 0.0001
    gradient_clip: float = 1.0
    teacher_forcing_ratio: float = 0.5
    clamp_value: float = 10.0
    uncertainty_growth: float = 0.05
    uncertainty_penalty: float = 0.1
    deviation_threshold: float = 2.0
    max_uncertainty: float = 1.0
    initial_uncertainty: float = 0.1
    significance_threshold: float = 0.1
    random_state: int = 42

    def __post_init__(self) -> None:
        if self.latent_dim < 1:
            raise ValueError(f"latent_dim must be >= 1, got {self.latent_dim}")
        if self.connectivity not in ("dendritic", "sparse"):
            raise ValueError(f"Unknown connectivity: {self.connectivity!r}")
        if self.dt <= 0:
            raise ValueError(f"dt must be positive, got {self.dt}")

    @property
    def n_bases(self) -> int:
        return self.dendritic_bases if self.connectivity == "dendritic" else 0

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> "PLRNNConfig":
        known = {f.name for f in fields(cls)}
        mapping = dict(mapping or {})
        unknown = sorted(set(mapping) - known)
        if unknown:
            logger.warning("Ignoring unknown PLRNN config keys: %s", unknown)
        return cls(**{k: v for k, v in mapping.items() if k in known})

    def merged(self, overrides: Mapping[str, Any] | None) -> "PLRNNConfig":
        data = asdict(self)
        data.update(overrides or {})
        return PLRNNConfig.from_mapping(data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_plrnn_config() -> PLRNNConfig:
    """Build a :class:`PLRNNConfig` from the ``plrnn`` config section."""
    return PLRNNConfig.from_mapping(get_section("plrnn"))


def resolve_horizon(horizon: int | str, dt: float = 1.0) -> int:
    """Convert a step count or a label such as ``"72h"`` / ``"3d"`` to steps.

    Hybrid labels (``short``/``medium``/``long``) are accepted as well.
    """
    if isinstance(horizon, (bool, np.bool_)):
        raise ValueError(f"Invalid horizon: {horizon!r}")
    if isinstance(horizon, (int, np.integer)):
        if horizon < 0:
            raise ValueError(f"Horizon must be non-negative, got {horizon}")
        return int(horizon)
    if isinstance(horizon, str):
        if horizon in HYBRID_HORIZON_STEPS:
            return HYBRID_HORIZON_STEPS[horizon]
        match = _HORIZON_RE.match(horizon)
        if match:
            hours = float(match.group(1)) * (24.0 if match.group(2).lower() == "d" else 1.0)
            return max(1, int(round(hours / dt)))
    raise ValueError(f"Invalid horizon: {horizon!r}")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PLRNNEngine:
    """Nonlinear dynamics engine over the latent psychological state.

    Parameters
    ----------
    config:
        A :class:`PLRNNConfig`, a mapping of overrides, or *None* for the
        defaults.

    The engine owns exactly one weight bundle.  Only the training methods
    mutate it; :meth:`get_weights` and training results hand out copies.
    """

    def __init__(self, config: PLRNNConfig | Mapping[str, Any] | None = None) -> None:
        if isinstance(config, PLRNNConfig):
            self.config = config
        else:
            self.config = PLRNNConfig.from_mapping(config)
        self._weights: PLRNNWeights | None = None
        self._optimizer: AdamOptimizer | None = None
        self._rng = np.random.default_rng(self.config.random_state)
        self._initialized = False
        self._kalman_former: KalmanFormerEngine | None = None
        self.training_history: list[float] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, config: PLRNNConfig | Mapping[str, Any] | None = None) -> None:
        """Create fresh weights.  A second call is a no-op."""
        if self._initialized:
            if config is not None:
                logger.warning("PLRNN already initialized -- config overrides ignored")
            return

        if isinstance(config, PLRNNConfig):
            self.config = config
        elif config:
            self.config = self.config.merged(config)
        self._rng = np.random.default_rng(self.config.random_state)

        self._weights = self._init_weights()
        self._reset_optimizer()
        self._initialized = True
        logger.info(
            "PLRNN initialized: latent_dim=%d, connectivity=%s, bases=%d",
            self.config.latent_dim, self.config.connectivity, self.config.n_bases,
        )

    def load_weights(self, weights: PLRNNWeights) -> None:
        if weights.latent_dim != self.config.latent_dim:
            raise ValueError(
                f"Weight bundle has latent_dim={weights.latent_dim}, "
                f"engine expects {self.config.latent_dim}"
            )
        self._weights = weights.copy()
        self._reset_optimizer()
        self._initialized = True
        logger.info(
            "PLRNN weights loaded (%d training samples)",
            weights.meta.training_samples,
        )

    def get_weights(self) -> PLRNNWeights:
        return self._require_weights().copy()

    def attach_kalman_former(self, engine: KalmanFormerEngine | None) -> None:
        """Attach the short-horizon engine used by :meth:`hybrid_predict`."""
        self._kalman_former = engine

    def _require_weights(self) -> PLRNNWeights:
        if not self._initialized or self._weights is None:
            raise EngineNotInitializedError("PLRNN")
        return self._weights

    def _reset_optimizer(self) -> None:
        cfg = self.config
        self._optimizer = AdamOptimizer(
            learning_rate=cfg.learning_rate,
            gradient_clip=cfg.gradient_clip,
            l2=cfg.l2_regularization,
            l1={"W": cfg.l1_regularization},
        )

    def _init_weights(self) -> PLRNNWeights:
        n = self.config.latent_dim
        k = self.config.n_bases
        rng = self._rng

        def xavier(rows: int, cols: int) -> float:
            return float(np.sqrt(2.0 / max(rows + cols, 1)))

        A = rng.uniform(0.9, 1.0, size=n)

        scale = xavier(n, n)
        mask = rng.random((n, n)) < _W_DENSITY
        W = np.where(mask, rng.uniform(-scale, scale, size=(n, n)), 0.0)
        np.fill_diagonal(W, 0.0)

        D = rng.normal(0.0, xavier(k, n), size=(k, n))
        R = rng.normal(0.0, 0.1 * xavier(n, k), size=(n, k))

        return PLRNNWeights(
            A=A,
            W=W,
            B=np.eye(n),
            C=np.eye(n),
            dendritic_weights=D,
            dendritic_readout=R,
            bias_latent=rng.uniform(-0.05, 0.05, size=n),
            bias_observed=rng.uniform(-0.05, 0.05, size=n),
            meta=WeightsMeta(
                trained_at=None,
                training_samples=0,
                validation_loss=float("inf"),
                config=self.config.to_dict(),
            ),
        )

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _fit(self, values: Any) -> np.ndarray:
        """Pad with zeros / truncate a vector to ``latent_dim``."""
        n = self.config.latent_dim
        v = np.zeros(n)
        arr = np.asarray(values, dtype=np.float64).reshape(-1)[:n]
        v[: arr.shape[0]] = arr
        return v

    def create_state(
        self,
        observation: Sequence[float] | np.ndarray,
        timestamp: datetime | None = None,
        uncertainty: Sequence[float] | np.ndarray | None = None,
        timestep: int = 0,
    ) -> PLRNNState:
        """Build a state whose latent and observed parts equal ``observation``."""
        clamp = self.config.clamp_value
        z = sanitize(self._fit(observation), clamp)
        if uncertainty is None:
            u = np.full(self.config.latent_dim, self.config.initial_uncertainty)
        else:
            u = np.abs(sanitize(self._fit(uncertainty)))
        return PLRNNState(
            latent_state=z,
            hidden_activations=relu(z),
            observed_state=z.copy(),
            uncertainty=u,
            timestamp=timestamp or datetime.now(timezone.utc),
            timestep=timestep,
        )

    # ------------------------------------------------------------------
    # Forward dynamics
    # ------------------------------------------------------------------

    def _step(self, z: np.ndarray, u: np.ndarray) -> tuple[np.ndarray, np.ndarray, tuple]:
        """One recurrence step.  Returns ``(z_next, x_next, cache)``."""
        w = self._weights
        clamp = self.config.clamp_value
        phi = relu(z)
        a = w.dendritic_weights @ z
        h = relu(a)
        with np.errstate(over="ignore", invalid="ignore"):
            z_pre = sanitize(
                w.A * z + w.W @ phi + w.dendritic_readout @ h + w.C @ u + w.bias_latent
            )
            z_next = np.clip(z_pre, -clamp, clamp)
            x_pre = sanitize(w.B @ z_next + w.bias_observed)
        x_next = np.clip(x_pre, -clamp, clamp)
        return z_next, x_next, (z, u, phi, a, h, z_pre, z_next, x_pre)

    def _next_uncertainty(self, z_next: np.ndarray, prev: np.ndarray) -> np.ndarray:
        cfg = self.config
        penalty = np.where(np.abs(z_next) > cfg.deviation_threshold, cfg.uncertainty_penalty, 0.0)
        # the cap never lowers a variance that arrived above it
        cap = np.maximum(cfg.max_uncertainty, prev)
        return np.minimum(cap, prev * (1.0 + cfg.uncertainty_growth) + penalty)

    def forward(
        self,
        state: PLRNNState,
        input: Sequence[float] | np.ndarray | None = None,
    ) -> PLRNNState:
        """Advance ``state`` by one step of ``dt`` hours.  Deterministic."""
        self._require_weights()
        if state.dim != self.config.latent_dim:
            raise ValueError(
                f"State has dimension {state.dim}, engine expects {self.config.latent_dim}"
            )
        u = np.zeros(self.config.latent_dim) if input is None else sanitize(self._fit(input))
        z = sanitize(state.latent_state, self.config.clamp_value)
        z_next, x_next, _ = self._step(z, u)

        return PLRNNState(
            latent_state=z_next,
            hidden_activations=relu(z_next),
            observed_state=x_next,
            uncertainty=self._next_uncertainty(z_next, state.uncertainty),
            timestamp=state.timestamp + timedelta(hours=self.config.dt),
            timestep=state.timestep + 1,
        )

    def _input_at(self, inputs: np.ndarray | None, t: int) -> np.ndarray | None:
        if inputs is None:
            return None
        if inputs.ndim == 1:
            return inputs
        return inputs[t] if t < inputs.shape[0] else None

    def predict(
        self,
        state: PLRNNState,
        horizon: int | str,
        inputs: Sequence[Sequence[float]] | np.ndarray | None = None,
    ) -> PLRNNPrediction:
        """Iterate :meth:`forward` over ``horizon`` steps.

        Parameters
        ----------
        state:
            Start state (included as the first trajectory element).
        horizon:
            Number of steps, or a label such as ``"6h"`` / ``"72h"``.
        inputs:
            Optional external inputs: one vector applied at every step or
            a ``(steps, latent_dim)`` array.  Missing rows mean no input.

        Returns
        -------
        PLRNNPrediction
            Trajectory, final observed mean, 95% CI
            ``mean +/- 1.96 * sqrt(uncertainty)``, per-step variance and
            early-warning signals over the trajectory.
        """
        self._require_weights()
        steps = resolve_horizon(horizon, self.config.dt)
        input_arr = None if inputs is None else np.asarray(inputs, dtype=np.float64)

        trajectory = [state]
        current = state
        for t in range(steps):
            current = self.forward(current, self._input_at(input_arr, t))
            trajectory.append(current)

        return self._prediction_from_trajectory(trajectory, steps)

    def _prediction_from_trajectory(
        self,
        trajectory: list[PLRNNState],
        steps: int,
        source: str = "plrnn",
        mean: np.ndarray | None = None,
        interval: ConfidenceInterval | None = None,
    ) -> PLRNNPrediction:
        final = trajectory[-1]
        mean = final.observed_state.copy() if mean is None else mean
        if interval is None:
            half = CI_Z_SCORE * np.sqrt(final.uncertainty)
            interval = ConfidenceInterval(lower=mean - half, upper=mean + half, level=CI_LEVEL)
        window = min(_MAX_EW_WINDOW, len(trajectory))
        return PLRNNPrediction(
            trajectory=trajectory,
            mean_prediction=mean,
            confidence_interval=interval,
            variance=np.vstack([s.uncertainty for s in trajectory]),
            early_warning_signals=detect_early_warnings(trajectory, window, dt=self.config.dt),
            horizon=steps,
            source=source,
        )

    def hybrid_predict(self, state: PLRNNState, horizon: str = "medium") -> PLRNNPrediction:
        """Horizon-dependent blend with the attached KalmanFormer.

        ``short`` (3 steps) delegates to the KalmanFormer, ``medium`` (12)
        averages both engines with the per-dimension union of their
        intervals, ``long`` (48) keeps this engine's mean and widens its
        interval to cover the KalmanFormer's.  Without an
        attached KalmanFormer every horizon falls back to this engine.
        """
        self._require_weights()
        if horizon not in HYBRID_HORIZON_STEPS:
            raise ValueError(
                f"Unknown hybrid horizon {horizon!r}; expected one of "
                f"{sorted(HYBRID_HORIZON_STEPS)}"
            )
        steps = HYBRID_HORIZON_STEPS[horizon]
        kf = self._kalman_former

        if kf is None:
            if horizon != "long":
                logger.info("No KalmanFormer attached -- %s horizon uses PLRNN only", horizon)
            return self.predict(state, steps)

        kf_pred = kf.predict(kf.from_plrnn_state(state), steps)

        if horizon == "long":
            own = self.predict(state, steps)
            # mean stays with this engine; the interval is never narrower than the filter's
            interval = ConfidenceInterval(
                lower=np.minimum(own.confidence_interval.lower, kf_pred.confidence_interval.lower),
                upper=np.maximum(own.confidence_interval.upper, kf_pred.confidence_interval.upper),
                level=CI_LEVEL,
            )
            return replace(own, confidence_interval=interval)

        kf_traj = [kf.to_plrnn_state(s) for s in kf_pred.trajectory]

        if horizon == "short":
            return self._prediction_from_trajectory(
                kf_traj,
                steps,
                source="kalmanformer",
                mean=kf_pred.blended_prediction.copy(),
                interval=kf_pred.confidence_interval,
            )

        own = self.predict(state, steps)
        mean = 0.5 * (own.mean_prediction + kf_pred.blended_prediction)
        interval = ConfidenceInterval(
            lower=np.minimum(own.confidence_interval.lower, kf_pred.confidence_interval.lower),
            upper=np.maximum(own.confidence_interval.upper, kf_pred.confidence_interval.upper),
            level=CI_LEVEL,
        )
        blended = [
            PLRNNState(
                latent_state=0.5 * (p.latent_state + k.latent_state),
                hidden_activations=relu(0.5 * (p.latent_state + k.latent_state)),
                observed_state=0.5 * (p.observed_state + k.observed_state),
                uncertainty=np.maximum(p.uncertainty, k.uncertainty),
                timestamp=p.timestamp,
                timestep=p.timestep,
            )
            for p, k in zip(own.trajectory, kf_traj)
        ]
        return PLRNNPrediction(
            trajectory=blended,
            mean_prediction=mean,
            confidence_interval=interval,
            variance=np.vstack([s.uncertainty for s in blended]),
            early_warning_signals=own.early_warning_signals,
            horizon=steps,
            source="hybrid",
        )

    # ------------------------------------------------------------------
    # Causal structure
    # ------------------------------------------------------------------

    def extract_causal_network(self, state: PLRNNState | None = None) -> CausalNetwork:
        """Directed graph read off ``A`` (self weights) and ``W`` (edges).

        An edge ``j -> i`` exists when ``|W[i, j]|`` exceeds the
        significance threshold.  Node values are filled from ``state``
        when given.
        """
        w = self._require_weights()
        n = self.config.latent_dim
        thr = self.config.significance_threshold
        W = w.W
        labels = [DIMENSIONS[i] if i < len(DIMENSIONS) else f"dim_{i}" for i in range(n)]

        abs_w = np.abs(W)
        centrality = (abs_w.sum(axis=1) + abs_w.sum(axis=0)) / (2.0 * n)
        values = state.observed_state if state is not None else np.zeros(n)

        nodes = [
            CausalNode(
                id=f"node_{i}",
                label=labels[i],
                self_weight=float(w.A[i]),
                centrality=float(centrality[i]),
                value=float(values[i]),
            )
            for i in range(n)
        ]

        edges: list[CausalEdge] = []
        for i in range(n):
            for j in range(n):
                if i != j and abs_w[i, j] > thr:
                    edges.append(CausalEdge(
                        source=f"node_{j}",
                        target=f"node_{i}",
                        weight=float(W[i, j]),
                        lag=self.config.dt,
                        significance=min(1.0, abs_w[i, j] * n),
                    ))

        loops = [
            (labels[i], labels[j])
            for i in range(n)
            for j in range(i + 1, n)
            if abs_w[i, j] > thr and abs_w[j, i] > thr
        ]

        density = len(edges) / (n * (n - 1)) if n > 1 else 0.0
        central = nodes[int(np.argmax(centrality))].label if nodes else None
        return CausalNetwork(
            nodes=nodes,
            edges=edges,
            density=density,
            central_node=central,
            feedback_loops=loops,
        )

    # ------------------------------------------------------------------
    # Intervention simulation
    # ------------------------------------------------------------------

    def simulate_intervention(
        self,
        state: PLRNNState,
        target: str,
        mode: str,
        magnitude: float,
    ) -> InterventionSimulation:
        """Compare a sustained intervention with the baseline over 24 steps."""
        self._require_weights()
        idx = DIMENSION_INDEX.get(target)
        if idx is None or idx >= self.config.latent_dim:
            raise ValueError(f"Unknown target dimension: {target!r}")
        if mode not in INTERVENTION_MODES:
            raise ValueError(f"Unknown intervention mode: {mode!r}")

        u = np.zeros(self.config.latent_dim)
        if mode == "increase":
            u[idx] = magnitude
        elif mode == "decrease":
            u[idx] = -magnitude
        else:
            u[idx] = -_STABILIZE_FACTOR * state.latent_state[idx]

        horizon = INTERVENTION_HORIZON
        dt = self.config.dt
        baseline = self.predict(state, horizon)
        intervened = self.predict(state, horizon, u)

        effects_vec = intervened.mean_prediction - baseline.mean_prediction
        n = self.config.latent_dim
        labels = [DIMENSIONS[i] if i < len(DIMENSIONS) else f"dim_{i}" for i in range(n)]
        effects = {labels[i]: float(effects_vec[i]) for i in range(n)}

        target_effect = np.array([
            abs(a.observed_state[idx] - b.observed_state[idx])
            for a, b in zip(intervened.trajectory, baseline.trajectory)
        ])
        peak_step = int(np.argmax(target_effect))
        peak = float(target_effect[peak_step])

        duration = horizon * dt
        if peak > 0:
            for t in range(peak_step, horizon + 1):
                if target_effect[t] < _EFFECT_DECAY_FRACTION * peak:
                    duration = t * dt
                    break

        side_effects = [
            (label, eff)
            for label, eff in effects.items()
            if label != target and abs(eff) > _SIDE_EFFECT_THRESHOLD
        ]
        final_u = float(intervened.trajectory[-1].uncertainty[idx])

        return InterventionSimulation(
            target=target,
            mode=mode,
            magnitude=float(magnitude),
            effects=effects,
            time_to_peak=peak_step * dt,
            duration=duration,
            side_effects=side_effects,
            confidence=float(np.clip(1.0 - final_u, 0.0, 1.0)),
        )

    # ------------------------------------------------------------------
    # Early warnings
    # ------------------------------------------------------------------

    def detect_early_warnings(
        self,
        history: Sequence[PLRNNState] | np.ndarray,
        window_size: int,
    ) -> list[EarlyWarningSignal]:
        self._require_weights()
        return detect_early_warnings(history, window_size, dt=self.config.dt)

    # ------------------------------------------------------------------
    # Gradients
    # ------------------------------------------------------------------

    def _backward(
        self,
        cache: tuple,
        dz_next: np.ndarray,
        dx_next: np.ndarray,
        grads: dict[str, np.ndarray],
    ) -> np.ndarray:
        """Accumulate parameter gradients of one step; return dL/dz_prev."""
        w = self._weights
        clamp = self.config.clamp_value
        z, u, phi, a, h, z_pre, z_next, x_pre = cache

        dx = dx_next * (np.abs(x_pre) < clamp)
        grads["B"] += np.outer(dx, z_next)
        grads["bias_observed"] += dx

        dz = (dz_next + w.B.T @ dx) * (np.abs(z_pre) < clamp)
        grads["A"] += dz * z
        grads["W"] += np.outer(dz, phi)
        grads["dendritic_readout"] += np.outer(dz, h)
        da = (w.dendritic_readout.T @ dz) * (a > 0)
        grads["dendritic_weights"] += np.outer(da, z)
        grads["C"] += np.outer(dz, u)
        grads["bias_latent"] += dz

        return w.A * dz + (w.W.T @ dz) * (z > 0) + w.dendritic_weights.T @ da

    def sequence_gradients(
        self,
        start_latent: np.ndarray,
        targets: np.ndarray,
        inputs: np.ndarray | None = None,
    ) -> tuple[float, dict[str, np.ndarray], np.ndarray]:
        """Loss and gradients of an unrolled segment (truncated BPTT).

        Parameters
        ----------
        start_latent:
            Latent state the segment starts from (not differentiated).
        targets:
            ``(T, latent_dim)`` observations to match, one per step.
        inputs:
            Optional ``(T, latent_dim)`` external inputs.

        Returns
        -------
        tuple
            ``(mean squared error, gradients by parameter name, final z)``.
        """
        w = self._require_weights()
        targets = np.atleast_2d(np.asarray(targets, dtype=np.float64))
        T = targets.shape[0]
        n = self.config.latent_dim

        z = sanitize(self._fit(start_latent), self.config.clamp_value)
        caches = []
        errors = []
        for t in range(T):
            u = self._input_at(inputs, t)
            u = np.zeros(n) if u is None else sanitize(self._fit(u))
            z, x, cache = self._step(z, u)
            caches.append(cache)
            errors.append(x - self._fit(targets[t]))

        loss = float(np.mean(np.square(errors)))
        grads = {name: np.zeros_like(arr) for name, arr in w.matrices().items()}
        dz = np.zeros(n)
        scale = 2.0 / (n * T)
        for t in reversed(range(T)):
            dz = self._backward(caches[t], dz, scale * errors[t], grads)

        np.fill_diagonal(grads["W"], 0.0)
        return loss, grads, z

    def apply_gradients(
        self,
        grads: dict[str, np.ndarray],
        learning_rate: float | None = None,
    ) -> None:
        """One Adam step on the owned weight bundle, then re-impose structure."""
        w = self._require_weights()
        self._optimizer.step(w.matrices(), grads, learning_rate)
        np.clip(w.A, -1.0, 1.0, out=w.A)
        np.fill_diagonal(w.W, 0.0)
        for arr in w.matrices().values():
            arr[~np.isfinite(arr)] = 0.0

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train_online(self, sample: TrainingSample) -> TrainingResult:
        """One pass over a sequence with probabilistic teacher forcing.

        Samples with fewer than two observations are reported as
        ``loss=inf, converged=False`` rather than raised.
        """
        w = self._require_weights()
        start = time.perf_counter()
        obs = sample.observations

        if len(sample) < 2:
            logger.debug("Training sample too short (%d observations)", len(sample))
            return TrainingResult(
                loss=float("inf"),
                validation_loss=float("inf"),
                epochs=0,
                training_time=0.0,
                converged=False,
                weights=w.copy(),
                error="sample has fewer than 2 observations",
            )

        state = self.create_state(
            obs[0], sample.timestamps[0] if sample.timestamps else None
        )
        total = 0.0
        steps = len(sample) - 1
        for t in range(steps):
            u = None if sample.inputs is None else sample.inputs[t]
            target = self._fit(obs[t + 1])
            predicted = self.forward(state, u)
            total += self.calculate_loss(predicted.observed_state, target)

            _, grads, _ = self.sequence_gradients(
                state.latent_state,
                target.reshape(1, -1),
                None if u is None else np.asarray(u, dtype=np.float64).reshape(1, -1),
            )
            self.apply_gradients(grads)

            if self._rng.random() < self.config.teacher_forcing_ratio:
                state = self.create_state(target, predicted.timestamp, predicted.uncertainty,
                                          timestep=predicted.timestep)
            else:
                state = predicted

        avg = total / steps
        self.training_history.append(avg)
        self.record_training(1)

        return TrainingResult(
            loss=avg,
            validation_loss=avg,
            epochs=1,
            training_time=time.perf_counter() - start,
            converged=avg < _ONLINE_CONVERGENCE,
            weights=w.copy(),
            loss_history=[avg],
        )

    def train_batch(
        self,
        samples: Sequence[TrainingSample],
        callback: Callable[[int, TrainingResult], bool | None] | None = None,
    ) -> TrainingResult:
        """Run :meth:`train_online` over every sample.

        Parameters
        ----------
        samples:
            Training sequences.
        callback:
            Called as ``callback(index, result)`` after each sample, e.g.
            to checkpoint weights.  Returning ``False`` cancels the
            remaining samples.

        Returns
        -------
        TrainingResult
            Mean loss over the valid (finite-loss) samples; converged when
            that mean is below 0.05.
        """
        w = self._require_weights()
        start = time.perf_counter()
        losses: list[float] = []
        processed = 0
        cancelled = False

        for i, sample in enumerate(samples):
            result = self.train_online(sample)
            processed += 1
            if np.isfinite(result.loss):
                losses.append(result.loss)
            if callback is not None and callback(i, result) is False:
                cancelled = processed < len(samples)
                if cancelled:
                    logger.info("Batch training cancelled after %d/%d samples",
                                processed, len(samples))
                break

        if not losses:
            return TrainingResult(
                loss=float("inf"),
                validation_loss=float("inf"),
                epochs=processed,
                training_time=time.perf_counter() - start,
                converged=False,
                weights=w.copy(),
                cancelled=cancelled,
                error="no sample had at least 2 observations",
            )

        avg = float(np.mean(losses))
        converged = avg < _BATCH_CONVERGENCE
        if converged:
            self.record_training(0, validation_loss=avg)

        logger.info(
            "PLRNN batch training: %d samples, loss=%.5f, converged=%s",
            processed, avg, converged,
        )
        return TrainingResult(
            loss=avg,
            validation_loss=avg,
            epochs=processed,
            training_time=time.perf_counter() - start,
            converged=converged,
            weights=w.copy(),
            loss_history=losses,
            cancelled=cancelled,
        )

    def record_training(self, n_samples: int, validation_loss: float | None = None) -> None:
        """Update the weight-bundle metadata after a training run."""
        meta = self._require_weights().meta
        meta.training_samples += n_samples
        meta.trained_at = datetime.now(timezone.utc)
        if validation_loss is not None:
            meta.validation_loss = validation_loss

    @staticmethod
    def calculate_loss(predicted: Any, actual: Any) -> float:
        """Mean squared error over all entries; 0 for empty input."""
        p = np.asarray(predicted, dtype=np.float64)
        a = np.asarray(actual, dtype=np.float64)
        if p.size == 0:
            return 0.0
        return float(np.mean((p - a) ** 2))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_complexity_metrics(self) -> dict[str, float]:
        """Sparsity, effective dimensionality and a Lyapunov estimate.

        Returns zeros before initialisation instead of raising, so status
        displays can always call it.
        """
        if not self._initialized or self._weights is None:
            return {
                "effective_dimensionality": 0.0,
                "sparsity": 0.0,
                "lyapunov_exponent": 0.0,
                "n_parameters": 0,
            }
        w = self._weights
        n = w.latent_dim
        off = ~np.eye(n, dtype=bool)
        sparsity = float(np.mean(np.abs(w.W[off]) < _NEAR_ZERO)) if n > 1 else 1.0

        # Linearisation in the all-active regime
        jac = np.diag(w.A) + w.W
        sv = np.linalg.svd(jac, compute_uv=False)
        eff_dim = float(sv.sum() ** 2 / max(np.sum(sv ** 2), EPSILON))
        lam = power_iteration(jac)
        lyapunov = float(np.log(max(abs(lam), EPSILON)))

        return {
            "effective_dimensionality": eff_dim,
            "sparsity": sparsity,
            "lyapunov_exponent": lyapunov,
            "n_parameters": int(sum(a.size for a in w.matrices().values())),
        }


def create_plrnn_engine(
    config: PLRNNConfig | Mapping[str, Any] | None = None,
) -> PLRNNEngine:
    """Construct and initialise a :class:`PLRNNEngine`."""
    engine = PLRNNEngine(config)
    engine.initialize()
    return engine

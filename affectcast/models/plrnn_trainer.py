"""Multi-epoch PLRNN training with truncated backpropagation through time.

``PLRNNEngine.train_online`` takes one-step gradients, which is enough
for per-session personalisation.  Fitting a model from a history of
many users benefits from longer credit assignment, so this module:

- unrolls the recurrence over windows of ``bptt_window`` steps,
- starts each window from the observed state with probability equal to
  the (decaying) teacher-forcing ratio, otherwise from the free-running
  latent state carried over from the previous window,
- anneals the learning rate with a cosine schedule,
- holds out the tail of every sequence for validation and stops early
  when the validation loss stops improving, restoring the best weights.

Top-level entry point:
    ``train_plrnn`` -- returns a :class:`TrainingResult`.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass, fields
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from affectcast.config_loader import get_section
from affectcast.models.plrnn import PLRNNEngine
from affectcast.models.state import TrainingResult, TrainingSample

logger = logging.getLogger(__name__)

_MIN_VALIDATION_STEPS: int = 2


@dataclass
class TrainerConfig:
    epochs: int = 30
    bptt_window: int = 8
    validation_fraction: float = 0.2
    patience: int = 5
    min_delta: float = 1e-4
    teacher_forcing_decay: float = 0.95
    min_teacher_forcing: float = 0.1
    lr_min_fraction: float = 0.1
    random_state: int = 42

    def __post_init__(self) -> None:
        if self.bptt_window < 1:
            raise ValueError(f"bptt_window must be >= 1, got {self.bptt_window}")
        if not 0.0 <= self.validation_fraction < 1.0:
            raise ValueError(
                f"validation_fraction must lie in [0, 1), got {self.validation_fraction}"
            )

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> "TrainerConfig":
        known = {f.name for f in fields(cls)}
        mapping = dict(mapping or {})
        unknown = sorted(set(mapping) - known)
        if unknown:
            logger.warning("Ignoring unknown trainer config keys: %s", unknown)
        return cls(**{k: v for k, v in mapping.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_trainer_config() -> TrainerConfig:
    return TrainerConfig.from_mapping(get_section("trainer"))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def split_sample(
    sample: TrainingSample,
    validation_fraction: float,
) -> tuple[TrainingSample, TrainingSample | None]:
    """Temporal split: the tail of the sequence becomes validation data.

    The validation part starts at the last training observation so its
    first transition is still scored.
    """
    n = len(sample)
    n_val = int(math.floor(n * validation_fraction))
    if n_val < _MIN_VALIDATION_STEPS or n - n_val < 2:
        return sample, None
    cut = n - n_val

    def _part(lo: int, hi: int) -> TrainingSample:
        return TrainingSample(
            observations=sample.observations[lo:hi],
            timestamps=list(sample.timestamps[lo:hi]),
            inputs=None if sample.inputs is None else sample.inputs[lo:hi],
            user_id=sample.user_id,
        )

    return _part(0, cut), _part(cut - 1, n)


def one_step_loss(engine: PLRNNEngine, sample: TrainingSample) -> float:
    """Mean one-step-ahead MSE when every step starts from the observation."""
    obs = sample.observations
    losses = []
    for t in range(len(sample) - 1):
        state = engine.create_state(obs[t])
        u = None if sample.inputs is None else sample.inputs[t]
        pred = engine.forward(state, u)
        losses.append(engine.calculate_loss(pred.observed_state, obs[t + 1][: engine.config.latent_dim]))
    return float(np.mean(losses)) if losses else float("nan")


def cosine_lr(base: float, epoch: int, epochs: int, min_fraction: float) -> float:
    lr_min = base * min_fraction
    if epochs <= 1:
        return base
    return lr_min + 0.5 * (base - lr_min) * (1.0 + math.cos(math.pi * epoch / (epochs - 1)))


def _train_sequence(
    engine: PLRNNEngine,
    sample: TrainingSample,
    window: int,
    teacher_forcing: float,
    lr: float,
    rng: np.random.Generator,
) -> float:
    obs = sample.observations
    n_steps = len(sample) - 1
    z = obs[0]
    losses = []
    for start in range(0, n_steps, window):
        stop = min(start + window, n_steps)
        if start == 0 or rng.random() < teacher_forcing:
            z = obs[start]
        inputs = None if sample.inputs is None else sample.inputs[start:stop]
        loss, grads, z = engine.sequence_gradients(z, obs[start + 1: stop + 1], inputs)
        engine.apply_gradients(grads, learning_rate=lr)
        losses.append(loss)
    return float(np.mean(losses))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def train_plrnn(
    engine: PLRNNEngine,
    samples: Sequence[TrainingSample],
    config: TrainerConfig | None = None,
    callback: Callable[[int, float, float], bool | None] | None = None,
) -> TrainingResult:
    """Fit ``engine`` on ``samples`` with truncated BPTT and early stopping.

    Parameters
    ----------
    engine:
        An initialised engine; its weights are updated in place and the
        best validation weights are restored at the end.
    samples:
        Observation sequences; those shorter than two steps are skipped.
    config:
        Trainer settings; defaults from ``config/engine_config.yml``.
    callback:
        ``callback(epoch, train_loss, val_loss)`` after each epoch.
        Returning ``False`` stops training (the result is marked
        cancelled).

    Returns
    -------
    TrainingResult
        ``loss`` is the final training loss, ``validation_loss`` the best
        validation loss, ``loss_history`` the per-epoch training losses.
    """
    cfg = config or load_trainer_config()
    start = time.perf_counter()
    rng = np.random.default_rng(cfg.random_state)

    usable = [s for s in samples if len(s) >= 2]
    if not usable:
        return TrainingResult(
            loss=float("inf"),
            validation_loss=float("inf"),
            epochs=0,
            training_time=0.0,
            converged=False,
            weights=engine.get_weights(),
            error=f"No usable samples ({len(samples)} given, need >= 2 observations each)",
        )

    splits = [split_sample(s, cfg.validation_fraction) for s in usable]
    train_set = [tr for tr, _ in splits]
    val_set = [va for _, va in splits if va is not None] or train_set

    base_lr = engine.config.learning_rate
    tf = engine.config.teacher_forcing_ratio
    best_val = float("inf")
    best_weights = engine.get_weights()
    stale = 0
    history: list[float] = []
    cancelled = False
    error = None

    for epoch in range(cfg.epochs):
        lr = cosine_lr(base_lr, epoch, cfg.epochs, cfg.lr_min_fraction)
        order = rng.permutation(len(train_set))
        train_loss = float(np.mean([
            _train_sequence(engine, train_set[i], cfg.bptt_window, tf, lr, rng)
            for i in order
        ]))
        val_loss = float(np.nanmean([one_step_loss(engine, s) for s in val_set]))
        history.append(train_loss)

        if not (math.isfinite(train_loss) and math.isfinite(val_loss)):
            logger.warning("PLRNN training diverged at epoch %d -- restoring best weights", epoch)
            error = f"Training diverged at epoch {epoch}"
            break

        logger.debug(
            "epoch %d: train=%.5f val=%.5f lr=%.2e tf=%.2f",
            epoch, train_loss, val_loss, lr, tf,
        )

        if val_loss < best_val - cfg.min_delta:
            best_val = val_loss
            best_weights = engine.get_weights()
            stale = 0
        else:
            stale += 1

        if callback is not None and callback(epoch, train_loss, val_loss) is False:
            cancelled = True
            break
        if stale >= cfg.patience:
            logger.info("Early stopping at epoch %d (best val %.5f)", epoch, best_val)
            break

        tf = max(cfg.min_teacher_forcing, tf * cfg.teacher_forcing_decay)

    engine.load_weights(best_weights)
    engine.record_training(len(usable), best_val if math.isfinite(best_val) else None)

    logger.info(
        "PLRNN trained on %d sequences for %d epochs: train=%.5f best_val=%.5f",
        len(usable), len(history), history[-1] if history else float("nan"), best_val,
    )
    return TrainingResult(
        loss=history[-1] if history else float("inf"),
        validation_loss=best_val,
        epochs=len(history),
        training_time=time.perf_counter() - start,
        converged=error is None and best_val < 0.05,
        weights=engine.get_weights(),
        loss_history=history,
        cancelled=cancelled,
        error=error,
    )

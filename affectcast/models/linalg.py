"""Small numerical helpers shared by the engines."""

from __future__ import annotations

import logging

import numpy as np

from affectcast.constants import EPSILON

logger = logging.getLogger(__name__)

# Condition number above which the innovation covariance is treated as singular
_MAX_CONDITION: float = 1e12
# Gain used when the covariance cannot be inverted: K = scale * I
_FALLBACK_GAIN_SCALE: float = 0.5


def sanitize(x: np.ndarray, clamp: float | None = None) -> np.ndarray:
    """Replace non-finite entries with 0 and optionally clamp to [-clamp, clamp]."""
    out = np.where(np.isfinite(x), x, 0.0)
    if clamp is not None:
        out = np.clip(out, -clamp, clamp)
    return out


def relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(0.0, x)


def sigmoid(x):
    # Split by sign to avoid overflow in exp
    arr = np.atleast_1d(np.asarray(x, dtype=np.float64))
    out = np.empty_like(arr)
    pos = arr >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-arr[pos]))
    ex = np.exp(arr[~pos])
    out[~pos] = ex / (1.0 + ex)
    if np.ndim(x) == 0:
        return float(out[0])
    return out


def softmax(x: np.ndarray, axis: int = -1) -> np.ndarray:
    shifted = x - np.max(x, axis=axis, keepdims=True)
    ex = np.exp(shifted)
    return ex / np.sum(ex, axis=axis, keepdims=True)


def layer_norm(
    x: np.ndarray,
    gamma: np.ndarray,
    beta: np.ndarray,
    eps: float = 1e-5,
) -> np.ndarray:
    mean = x.mean(axis=-1, keepdims=True)
    var = x.var(axis=-1, keepdims=True)
    return gamma * (x - mean) / np.sqrt(var + eps) + beta


def symmetrize(P: np.ndarray) -> np.ndarray:
    return 0.5 * (P + P.T)


def compute_kalman_gain(
    P: np.ndarray,
    H: np.ndarray,
    R: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, bool]:
    """Standard Kalman gain ``K = P H' S^-1`` with ``S = H P H' + R``.

    Parameters
    ----------
    P:
        (n, n) predicted error covariance.
    H:
        (m, n) observation matrix.
    R:
        (m, m) measurement noise covariance.

    Returns
    -------
    tuple
        ``(K, S, fallback)``.  When ``S`` is singular, ill-conditioned or
        non-finite, ``K`` is a scaled identity and ``fallback`` is True.
        The gain is always finite.
    """
    n = P.shape[0]
    m = H.shape[0]
    S = H @ P @ H.T + R

    def _fallback(reason: str) -> tuple[np.ndarray, np.ndarray, bool]:
        logger.warning(
            "Innovation covariance %s -- using scaled-identity Kalman gain", reason
        )
        K = np.zeros((n, m))
        k = min(n, m)
        K[:k, :k] = np.eye(k) * _FALLBACK_GAIN_SCALE
        return K, sanitize(S), True

    if not np.all(np.isfinite(S)):
        return _fallback("is non-finite")

    try:
        cond = np.linalg.cond(S)
    except np.linalg.LinAlgError:
        return _fallback("has no condition number")
    if not np.isfinite(cond) or cond > _MAX_CONDITION:
        return _fallback(f"is ill-conditioned (cond={cond:.3g})")

    try:
        K = np.linalg.solve(S.T, (P @ H.T).T).T
    except np.linalg.LinAlgError:
        return _fallback("is singular")

    if not np.all(np.isfinite(K)):
        return _fallback("produced a non-finite gain")
    return K, S, False


def safe_inverse(S: np.ndarray) -> np.ndarray:
    """Pseudo-inverse for diagnostics (NIS) where exact inversion may fail."""
    try:
        return np.linalg.pinv(S + np.eye(S.shape[0]) * EPSILON)
    except np.linalg.LinAlgError:
        return np.zeros_like(S)


def power_iteration(M: np.ndarray, n_iter: int = 20) -> float:
    """Approximate the dominant eigenvalue (Rayleigh quotient) of ``M``."""
    n = M.shape[0]
    v = np.full(n, 1.0 / np.sqrt(n))
    for _ in range(n_iter):
        Mv = M @ v
        norm = np.linalg.norm(Mv)
        if norm < 1e-10:
            return 0.0
        v = Mv / norm
    return float(v @ (M @ v))

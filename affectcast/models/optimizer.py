"""Adam optimiser for numpy parameter dictionaries.

Parameters are updated in place.  Each named parameter keeps its own
first/second moment estimates; the step counter is shared and advanced
once per :meth:`AdamOptimizer.step` call.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class AdamOptimizer:
    """Adam with L1/L2 penalties and elementwise gradient clipping.

    Parameters
    ----------
    learning_rate:
        Step size.
    beta1, beta2, eps:
        Standard Adam constants.
    gradient_clip:
        Gradients are clipped elementwise to ``[-clip, clip]`` after the
        penalties are added.  ``None`` disables clipping.
    l2:
        Weight decay applied to every parameter.
    l1:
        Per-parameter L1 strength, e.g. ``{"W": 0.01}``.
    """

    learning_rate: float = 0.001
    beta1: float = 0.9
    beta2: float = 0.999
    eps: float = 1e-8
    gradient_clip: float | None = 1.0
    l2: float = 0.0
    l1: dict[str, float] = field(default_factory=dict)
    t: int = 0
    m: dict[str, np.ndarray] = field(default_factory=dict)
    v: dict[str, np.ndarray] = field(default_factory=dict)

    def reset(self) -> None:
        self.t = 0
        self.m.clear()
        self.v.clear()

    def step(
        self,
        params: dict[str, np.ndarray],
        grads: dict[str, np.ndarray],
        learning_rate: float | None = None,
    ) -> None:
        """Apply one update to every parameter that has a gradient."""
        lr = self.learning_rate if learning_rate is None else learning_rate
        self.t += 1
        bc1 = 1.0 - self.beta1 ** self.t
        bc2 = 1.0 - self.beta2 ** self.t

        for name, grad in grads.items():
            param = params[name]
            g = np.where(np.isfinite(grad), grad, 0.0)
            if self.l2:
                g = g + self.l2 * param
            l1 = self.l1.get(name, 0.0)
            if l1:
                g = g + l1 * np.sign(param)
            if self.gradient_clip is not None:
                g = np.clip(g, -self.gradient_clip, self.gradient_clip)

            if name not in self.m:
                self.m[name] = np.zeros_like(param)
                self.v[name] = np.zeros_like(param)
            self.m[name] = self.beta1 * self.m[name] + (1.0 - self.beta1) * g
            self.v[name] = self.beta2 * self.v[name] + (1.0 - self.beta2) * g ** 2

            m_hat = self.m[name] / bc1
            v_hat = self.v[name] / bc2
            param -= lr * m_hat / (np.sqrt(v_hat) + self.eps)

"""Bayesian belief-state value types.

The belief state is produced by an external belief tracker: independent
Gaussian posteriors over valence, arousal, dominance, overall risk and
three resource components (energy, coping capacity, social support).
This package only reads and writes these values; it never owns them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import numpy as np

RESOURCE_COMPONENTS: tuple[str, ...] = ("energy", "coping_capacity", "social_support")


@dataclass(frozen=True)
class Posterior:
    """Independent Gaussian posterior."""

    mean: float
    variance: float

    def __post_init__(self) -> None:
        if self.variance < 0:
            raise ValueError(f"variance must be non-negative, got {self.variance}")

    @property
    def std(self) -> float:
        return float(np.sqrt(self.variance))

    def to_dict(self) -> dict[str, float]:
        return {"mean": float(self.mean), "variance": float(self.variance)}


@dataclass
class BeliefState:
    """Snapshot of a user's belief state.  Any posterior may be missing."""

    valence: Posterior | None = None
    arousal: Posterior | None = None
    dominance: Posterior | None = None
    risk: Posterior | None = None
    energy: Posterior | None = None
    coping_capacity: Posterior | None = None
    social_support: Posterior | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str | None = None
    overall_confidence: float = 0.5

    @property
    def resources(self) -> Posterior | None:
        """Composite of the available resource components (mean of means/variances)."""
        parts = [getattr(self, name) for name in RESOURCE_COMPONENTS]
        parts = [p for p in parts if p is not None]
        if not parts:
            return None
        return Posterior(
            mean=float(np.mean([p.mean for p in parts])),
            variance=float(np.mean([p.variance for p in parts])),
        )

    def posteriors(self) -> dict[str, Posterior | None]:
        """The five engine-facing posteriors in dimension order."""
        return {
            "valence": self.valence,
            "arousal": self.arousal,
            "dominance": self.dominance,
            "risk": self.risk,
            "resources": self.resources,
        }

    @classmethod
    def from_update(
        cls,
        update: Mapping[str, Posterior | Mapping[str, float]],
        timestamp: datetime | None = None,
        user_id: str | None = None,
        overall_confidence: float = 0.5,
    ) -> "BeliefState":
        """Build a belief from a five-dimension update.

        The single ``resources`` posterior is copied into all three
        resource components so the composite reproduces it exactly.
        """
        def _p(name: str) -> Posterior | None:
            value = update.get(name)
            if value is None or isinstance(value, Posterior):
                return value
            return Posterior(mean=float(value["mean"]), variance=float(value["variance"]))

        resources = _p("resources")
        return cls(
            valence=_p("valence"),
            arousal=_p("arousal"),
            dominance=_p("dominance"),
            risk=_p("risk"),
            energy=resources,
            coping_capacity=resources,
            social_support=resources,
            timestamp=timestamp or datetime.now(timezone.utc),
            user_id=user_id,
            overall_confidence=overall_confidence,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            name: (p.to_dict() if p is not None else None)
            for name, p in self.posteriors().items()
        }
        out["timestamp"] = self.timestamp.isoformat()
        out["user_id"] = self.user_id
        out["overall_confidence"] = self.overall_confidence
        return out

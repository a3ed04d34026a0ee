"""Early-warning signal tests (critical slowing down indicators)."""

from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

import numpy as np


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_ar1(n: int, phi: float, sd: float, rng: np.random.Generator) -> np.ndarray:
    x = np.zeros(n)
    for t in range(1, n):
        x[t] = phi * x[t - 1] + rng.normal(0.0, sd)
    return x


def _make_states(values: np.ndarray):
    from affectcast.models.state import PLRNNState
    t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [
        PLRNNState(
            latent_state=row,
            hidden_activations=np.maximum(row, 0.0),
            observed_state=row,
            uncertainty=np.zeros_like(row),
            timestamp=t0 + timedelta(hours=i),
            timestep=i,
        )
        for i, row in enumerate(values)
    ]


# ===========================================================================
# Statistics
# ===========================================================================


class TestStatistics(unittest.TestCase):

    def test_autocorrelation_edge_cases(self):
        from affectcast.models.early_warning import lag1_autocorrelation
        self.assertEqual(lag1_autocorrelation(np.array([1.0, 2.0])), 0.0)
        self.assertEqual(lag1_autocorrelation(np.full(10, 3.0)), 0.0)

    def test_autocorrelation_of_trend_is_high(self):
        from affectcast.models.early_warning import lag1_autocorrelation
        self.assertGreater(lag1_autocorrelation(np.arange(50, dtype=float)), 0.9)

    def test_variance(self):
        from affectcast.models.early_warning import sample_variance
        self.assertEqual(sample_variance(np.array([1.0])), 0.0)
        self.assertAlmostEqual(sample_variance(np.array([1.0, 3.0])), 2.0)

    def test_flickering(self):
        from affectcast.models.early_warning import flickering_score
        alternating = np.array([1.0, -1.0] * 10)
        self.assertAlmostEqual(flickering_score(alternating), 1.0)
        self.assertEqual(flickering_score(np.arange(20, dtype=float)), 0.0)
        self.assertEqual(flickering_score(np.array([1.0, -1.0, 1.0])), 0.0)

    def test_mean_abs_correlation(self):
        from affectcast.models.early_warning import mean_abs_correlation
        x = np.arange(10, dtype=float)
        window = np.column_stack([x, -2 * x, x ** 2])
        self.assertGreater(mean_abs_correlation(window), 0.9)
        self.assertEqual(mean_abs_correlation(x.reshape(-1, 1)), 0.0)


# ===========================================================================
# Detection
# ===========================================================================


class TestDetectEarlyWarnings(unittest.TestCase):

    def test_short_history_yields_nothing(self):
        from affectcast.models.early_warning import detect_early_warnings
        self.assertEqual(detect_early_warnings(np.zeros((9, 5)), 5), [])
        self.assertEqual(detect_early_warnings([], 5), [])
        self.assertEqual(detect_early_warnings(np.zeros((20, 5)), 0), [])

    def test_stable_noise_yields_nothing(self):
        from affectcast.models.early_warning import detect_early_warnings
        rng = np.random.default_rng(1)
        series = rng.normal(0.0, 1.0, size=400)
        self.assertEqual(detect_early_warnings(series, 200), [])

    def test_rising_autocorrelation(self):
        from affectcast.models.early_warning import detect_early_warnings
        rng = np.random.default_rng(2)
        early = rng.normal(0.0, 0.5, size=200)
        late = _make_ar1(200, 0.95, 0.2, rng)
        signals = detect_early_warnings(np.concatenate([early, late]), 200)
        ac = [s for s in signals if s.kind == "autocorrelation"]
        self.assertEqual(len(ac), 1)
        self.assertEqual(ac[0].dimension, "valence")
        self.assertIsNotNone(ac[0].time_to_transition)
        self.assertLessEqual(ac[0].time_to_transition, 48.0)
        self.assertAlmostEqual(ac[0].confidence, 1.0)

    def test_rising_variance(self):
        from affectcast.models.early_warning import detect_early_warnings
        rng = np.random.default_rng(3)
        series = np.concatenate([rng.normal(0.0, 0.1, 200), rng.normal(0.0, 1.0, 200)])
        signals = detect_early_warnings(series, 200, labels=["risk"])
        kinds = {(s.kind, s.dimension) for s in signals}
        self.assertIn(("variance", "risk"), kinds)

    def test_threefold_variance_on_risk(self):
        from affectcast.models.early_warning import detect_early_warnings
        rng = np.random.default_rng(11)

        def _standardized(n):
            x = rng.normal(0.0, 1.0, n)
            return (x - x.mean()) / x.std()

        series = np.concatenate([_standardized(200), np.sqrt(3.0) * _standardized(200)])
        signals = detect_early_warnings(series, 200, labels=["risk"])
        variance = [s for s in signals if s.kind == "variance" and s.dimension == "risk"]
        self.assertEqual(len(variance), 1)
        self.assertGreater(variance[0].strength, 0.0)
        self.assertAlmostEqual(variance[0].strength, 2.0, places=6)

    def test_flickering(self):
        from affectcast.models.early_warning import detect_early_warnings
        early = np.linspace(0.0, 1.0, 20)
        late = np.array([1.0, -1.0] * 10)
        signals = detect_early_warnings(np.concatenate([early, late]), 20)
        flicker = [s for s in signals if s.kind == "flickering"]
        self.assertEqual(len(flicker), 1)
        self.assertEqual(flicker[0].time_to_transition, 12.0)
        # 40 states of 50 for full confidence, kind weight 0.6
        self.assertAlmostEqual(flicker[0].confidence, 0.8 * 0.6)

    def test_rising_connectivity(self):
        from affectcast.models.early_warning import detect_early_warnings
        rng = np.random.default_rng(4)
        early = rng.normal(0.0, 1.0, size=(100, 2))
        base = rng.normal(0.0, 1.0, size=100)
        late = np.column_stack([base, base + rng.normal(0.0, 0.1, size=100)])
        signals = detect_early_warnings(np.vstack([early, late]), 100)
        conn = [s for s in signals if s.kind == "connectivity"]
        self.assertEqual(len(conn), 1)
        self.assertEqual(conn[0].dimension, "network")
        self.assertAlmostEqual(conn[0].confidence, 0.7)

    def test_sorted_by_strength(self):
        from affectcast.models.early_warning import detect_early_warnings
        rng = np.random.default_rng(5)
        early = rng.normal(0.0, 0.1, size=(60, 3))
        late = np.column_stack([
            rng.normal(0.0, 1.0, 60),
            rng.normal(0.0, 0.3, 60),
            np.array([1.0, -1.0] * 30),
        ])
        signals = detect_early_warnings(np.vstack([early, late]), 60)
        self.assertGreater(len(signals), 1)
        strengths = [s.strength for s in signals]
        self.assertEqual(strengths, sorted(strengths, reverse=True))

    def test_accepts_state_history(self):
        from affectcast.models.early_warning import detect_early_warnings
        rows = np.zeros((40, 5))
        rows[20:, 0] = [1.0, -1.0] * 10
        signals = detect_early_warnings(_make_states(rows), 20)
        self.assertIn(("flickering", "valence"), {(s.kind, s.dimension) for s in signals})

    def test_engine_wrapper_requires_initialization(self):
        from affectcast.models.plrnn import PLRNNEngine, create_plrnn_engine
        from affectcast.models.state import EngineNotInitializedError
        with self.assertRaises(EngineNotInitializedError):
            PLRNNEngine().detect_early_warnings(np.zeros((10, 5)), 5)
        engine = create_plrnn_engine()
        self.assertEqual(engine.detect_early_warnings(np.zeros((10, 5)), 5), [])

    def test_signal_to_dict(self):
        from affectcast.models.state import EarlyWarningSignal
        out = EarlyWarningSignal(
            kind="variance", dimension="arousal", strength=2.0,
            time_to_transition=None, confidence=0.5, recommendation="watch",
        ).to_dict()
        self.assertEqual(out["kind"], "variance")
        self.assertIsNone(out["time_to_transition"])


if __name__ == "__main__":
    unittest.main()

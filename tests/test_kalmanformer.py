"""KalmanFormer tests -- filter step, outlier gating, gain fallback,
irregular sampling, adaptive noise, multi-step prediction, blend ratio,
attention explanation, training and persistence.
"""

from __future__ import annotations

import json
import math
import unittest
from datetime import datetime, timedelta, timezone

import numpy as np


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def _make_engine(**overrides):
    from affectcast.models.kalmanformer import create_kalmanformer_engine
    cfg = {
        "embed_dim": 16,
        "num_heads": 2,
        "num_layers": 1,
        "context_window": 8,
    }
    cfg.update(overrides)
    return create_kalmanformer_engine(cfg)


def _run_updates(engine, state, n: int, seed: int = 0):
    rng = np.random.default_rng(seed)
    for i in range(n):
        obs = 0.3 * np.sin(i / 3.0) + rng.normal(0.0, 0.1, size=5)
        state = engine.update(state, obs, state.timestamp + timedelta(hours=1))
    return state


def _make_sample(steps: int = 10, ground_truth: bool = False, seed: int = 0):
    from affectcast.models.state import TrainingSample
    rng = np.random.default_rng(seed)
    truth = 0.4 * np.sin(np.arange(steps)[:, None] / 4.0 + np.linspace(0, 1, 5)[None, :])
    return TrainingSample(
        observations=truth + rng.normal(0.0, 0.05, size=truth.shape),
        timestamps=[_T0 + timedelta(hours=i) for i in range(steps)],
        ground_truth=truth if ground_truth else None,
    )


# ===========================================================================
# Configuration / lifecycle
# ===========================================================================


class TestLifecycle(unittest.TestCase):

    def test_requires_initialization(self):
        from affectcast.models.kalmanformer import KalmanFormerEngine
        from affectcast.models.state import EngineNotInitializedError
        engine = KalmanFormerEngine()
        with self.assertRaises(EngineNotInitializedError):
            engine.initialize_state(np.zeros(5), _T0)
        with self.assertRaises(EngineNotInitializedError):
            engine.predict(None, 3)
        with self.assertRaises(EngineNotInitializedError):
            engine.get_weights()

    def test_config_validation(self):
        from affectcast.models.kalmanformer import KalmanFormerConfig
        with self.assertRaises(ValueError):
            KalmanFormerConfig(state_dim=5, obs_dim=4)
        with self.assertRaises(ValueError):
            KalmanFormerConfig(blend_ratio=1.5)

    def test_load_config_from_file(self):
        from affectcast.models.kalmanformer import load_kalmanformer_config
        cfg = load_kalmanformer_config()
        self.assertEqual(cfg.embed_dim, 64)
        self.assertEqual(cfg.context_window, 24)
        self.assertEqual(cfg.dt, 1.0)

    def test_complexity_metrics(self):
        from affectcast.models.kalmanformer import KalmanFormerEngine
        self.assertEqual(KalmanFormerEngine().get_complexity_metrics()["total_parameters"], 0)
        metrics = _make_engine().get_complexity_metrics()
        self.assertEqual(metrics["kalman_parameters"], 100)
        self.assertEqual(
            metrics["total_parameters"],
            metrics["kalman_parameters"] + metrics["transformer_parameters"] + metrics["head_parameters"],
        )
        self.assertEqual(metrics["effective_context_length"], 8)


# ===========================================================================
# Filter step
# ===========================================================================


class TestUpdate(unittest.TestCase):

    def test_initial_state(self):
        engine = _make_engine()
        state = engine.initialize_state([0.1, 0.2, 0.3, 0.4, 0.5], _T0)
        np.testing.assert_allclose(state.estimate, [0.1, 0.2, 0.3, 0.4, 0.5])
        np.testing.assert_allclose(state.kalman_state.error_covariance, np.eye(5) * 0.1)
        self.assertEqual(len(state.observation_history), 1)
        self.assertIsNotNone(state.observation_history[0].embedding)

    def test_riccati_gain(self):
        engine = _make_engine(learned_gain=False)
        state = engine.initialize_state(np.zeros(5), _T0)
        new = engine.update(state, np.full(5, 0.1), _T0 + timedelta(hours=1))
        ks = new.kalman_state
        np.testing.assert_allclose(np.diag(ks.predicted_covariance), np.full(5, 0.11))
        np.testing.assert_allclose(np.diag(ks.kalman_gain), np.full(5, 0.11 / 0.21))
        self.assertFalse(ks.gain_fallback)
        self.assertIsNone(new.learned_gain)
        # Joseph form keeps the covariance symmetric and below the prior
        np.testing.assert_allclose(ks.error_covariance, ks.error_covariance.T)
        self.assertTrue(np.all(np.diag(ks.error_covariance) < 0.11))

    def test_learned_gain_is_bounded(self):
        engine = _make_engine()
        state = engine.initialize_state(np.zeros(5), _T0)
        new = engine.update(state, np.full(5, 0.1), _T0 + timedelta(hours=1))
        self.assertIsNotNone(new.learned_gain)
        self.assertTrue(np.all((new.learned_gain > 0.0) & (new.learned_gain < 1.0)))

    def test_outlier_gating(self):
        engine = _make_engine(learned_gain=False)
        state = engine.initialize_state(np.zeros(5), _T0)
        jump = engine.update(state, np.full(5, 5.0), _T0 + timedelta(hours=1))
        self.assertTrue(jump.kalman_state.is_outlier)
        self.assertGreater(jump.kalman_state.normalized_innovation_squared, 15.0)

        calm = engine.update(state, np.full(5, 0.01), _T0 + timedelta(hours=1))
        self.assertFalse(calm.kalman_state.is_outlier)

    def test_gain_fallback_on_singular_covariance(self):
        engine = _make_engine(learned_gain=False, process_noise=0.0, measurement_noise=0.0)
        state = engine.initialize_state(np.zeros(5), _T0, covariance=np.zeros((5, 5)))
        with self.assertLogs("affectcast.models.linalg", level="WARNING"):
            new = engine.update(state, np.full(5, 0.2), _T0 + timedelta(hours=1))
        ks = new.kalman_state
        self.assertTrue(ks.gain_fallback)
        np.testing.assert_allclose(ks.kalman_gain, np.eye(5) * 0.5)
        self.assertTrue(np.all(np.isfinite(ks.state_estimate)))
        self.assertTrue(np.all(np.isfinite(ks.error_covariance)))

    def test_process_noise_scales_with_gap(self):
        engine = _make_engine(learned_gain=False)
        state = engine.initialize_state(np.zeros(5), _T0)
        cases = [(1, 0.11), (10, 0.2), (100, 0.1 + 0.01 * 48)]
        for hours, expected in cases:
            new = engine.update(state, np.zeros(5), _T0 + timedelta(hours=hours))
            np.testing.assert_allclose(
                np.diag(new.kalman_state.predicted_covariance), np.full(5, expected)
            )

    def test_history_is_bounded(self):
        engine = _make_engine()
        state = _run_updates(engine, engine.initialize_state(np.zeros(5), _T0), 20)
        self.assertEqual(len(state.observation_history), 8)
        self.assertLessEqual(len(state.innovation_history), 8)
        self.assertEqual(state.kalman_state.timestep, 20)
        self.assertEqual(state.transformer_hidden.shape, (8, 16))

    def test_adaptive_measurement_noise(self):
        engine = _make_engine(context_window=16)
        state = engine.initialize_state(np.zeros(5), _T0)
        early = _run_updates(engine, state, 5)
        self.assertIsNone(early.kalman_state.adapted_r)
        late = _run_updates(engine, state, 12)
        R = late.kalman_state.adapted_r
        self.assertIsNotNone(R)
        np.testing.assert_allclose(R, R.T)
        self.assertTrue(np.all(np.diag(R) >= 1e-6))

        fixed = _make_engine(context_window=16, adaptive_noise=False)
        state = _run_updates(fixed, fixed.initialize_state(np.zeros(5), _T0), 12)
        self.assertIsNone(state.kalman_state.adapted_r)

    def test_confidence_in_unit_interval(self):
        engine = _make_engine()
        state = _run_updates(engine, engine.initialize_state(np.zeros(5), _T0), 6)
        self.assertTrue(0.0 <= state.confidence <= 1.0)

    def test_fixed_blend_ratio(self):
        engine = _make_engine(learned_blend=False, blend_ratio=0.3)
        state = _run_updates(engine, engine.initialize_state(np.zeros(5), _T0), 3)
        self.assertEqual(state.current_blend_ratio, 0.3)

    def test_learned_blend_starts_near_configured_ratio(self):
        engine = _make_engine()
        state = _run_updates(engine, engine.initialize_state(np.zeros(5), _T0), 3)
        self.assertLess(abs(state.current_blend_ratio - 0.5), 0.1)


class TestKalmanGain(unittest.TestCase):

    def test_scalar_case(self):
        from affectcast.models.linalg import compute_kalman_gain
        K, S, fallback = compute_kalman_gain(np.eye(2) * 0.3, np.eye(2), np.eye(2) * 0.1)
        self.assertFalse(fallback)
        np.testing.assert_allclose(K, np.eye(2) * 0.75)
        np.testing.assert_allclose(S, np.eye(2) * 0.4)

    def test_non_finite_covariance(self):
        from affectcast.models.linalg import compute_kalman_gain
        P = np.eye(3)
        P[0, 0] = np.nan
        with self.assertLogs("affectcast.models.linalg", level="WARNING"):
            K, S, fallback = compute_kalman_gain(P, np.eye(3), np.eye(3))
        self.assertTrue(fallback)
        np.testing.assert_allclose(K, np.eye(3) * 0.5)
        self.assertTrue(np.all(np.isfinite(S)))


# ===========================================================================
# Prediction
# ===========================================================================


class TestPredict(unittest.TestCase):

    def test_horizon_and_confidence_decay(self):
        engine = _make_engine()
        state = engine.initialize_state(np.full(5, 0.2), _T0, confidence=0.8)
        pred = engine.predict(state, 5)
        self.assertEqual(pred.horizon, 5)
        self.assertEqual(len(pred.trajectory), 6)
        self.assertAlmostEqual(pred.confidence, 0.8 * 0.95 ** 5)
        self.assertEqual(pred.trajectory[-1].timestamp, _T0 + timedelta(hours=5))

    def test_interval_widens(self):
        engine = _make_engine()
        state = engine.initialize_state(np.full(5, 0.2), _T0)
        one = engine.predict(state, 1)
        five = engine.predict(state, 5)
        np.testing.assert_allclose(five.confidence_interval.width, np.full(5, 2 * 1.96 * np.sqrt(0.15)))
        self.assertTrue(np.all(five.confidence_interval.width > one.confidence_interval.width))

    def test_zero_horizon(self):
        engine = _make_engine()
        state = engine.initialize_state(np.full(5, 0.2), _T0)
        pred = engine.predict(state, 0)
        self.assertEqual(len(pred.trajectory), 1)
        np.testing.assert_allclose(pred.blended_prediction, np.full(5, 0.2))

    def test_negative_horizon(self):
        engine = _make_engine()
        with self.assertRaises(ValueError):
            engine.predict(engine.initialize_state(np.zeros(5), _T0), -1)

    def test_deterministic(self):
        engine = _make_engine()
        state = _run_updates(engine, engine.initialize_state(np.zeros(5), _T0), 4)
        a = engine.predict(state, 6)
        b = engine.predict(state, 6)
        np.testing.assert_array_equal(a.blended_prediction, b.blended_prediction)

    def test_to_dict(self):
        engine = _make_engine()
        pred = engine.predict(engine.initialize_state(np.zeros(5), _T0), 3)
        json.dumps(pred.to_dict())


# ===========================================================================
# Blend ratio / explanation
# ===========================================================================


class TestBlendRatio(unittest.TestCase):

    def test_large_error_moves_toward_attention(self):
        engine = _make_engine()
        self.assertAlmostEqual(engine.adapt_blend_ratio(np.zeros((3, 5)), np.ones((3, 5))), 0.6)

    def test_small_error_moves_toward_filter(self):
        engine = _make_engine()
        self.assertAlmostEqual(engine.adapt_blend_ratio(np.zeros((3, 5)), np.zeros((3, 5))), 0.4)

    def test_moderate_error_keeps_ratio(self):
        engine = _make_engine()
        self.assertAlmostEqual(engine.adapt_blend_ratio(np.zeros(4), np.full(4, 0.3)), 0.5)

    def test_clamped(self):
        engine = _make_engine()
        for _ in range(10):
            engine.adapt_blend_ratio(np.zeros(5), np.full(5, 2.0))
        self.assertAlmostEqual(engine.blend_ratio, 0.8)
        for _ in range(10):
            engine.adapt_blend_ratio(np.zeros(5), np.zeros(5))
        self.assertAlmostEqual(engine.blend_ratio, 0.2)

    def test_mismatched_input_ignored(self):
        engine = _make_engine()
        self.assertEqual(engine.adapt_blend_ratio(np.zeros(3), np.zeros(4)), 0.5)
        self.assertEqual(engine.adapt_blend_ratio([], []), 0.5)


class TestExplain(unittest.TestCase):

    def test_explanation(self):
        engine = _make_engine()
        state = _run_updates(engine, engine.initialize_state(np.zeros(5), _T0), 6)
        expl = engine.explain(state)
        self.assertEqual(expl.weights.shape, (7, 7))
        np.testing.assert_allclose(expl.weights.sum(axis=1), np.ones(7))
        self.assertEqual(len(expl.top_influences), 5)
        self.assertIn(expl.pattern, ("recency_bias", "pattern_matching", "uniform"))
        weights = [t.weight for t in expl.top_influences]
        self.assertEqual(weights, sorted(weights, reverse=True))
        json.dumps(expl.to_dict())


# ===========================================================================
# Training / persistence / interop
# ===========================================================================


class TestTraining(unittest.TestCase):

    def test_one_step_ahead_training(self):
        engine = _make_engine()
        before = engine.get_weights().heads
        result = engine.train([_make_sample(seed=1), _make_sample(seed=2)])
        after = engine.get_weights().heads
        self.assertIsNone(result.error)
        self.assertEqual(result.n_steps, 16)
        self.assertTrue(np.isfinite(result.loss))
        self.assertFalse(np.allclose(before["readout_weights"], after["readout_weights"]))
        self.assertFalse(np.allclose(before["blend_bias"], after["blend_bias"]))
        np.testing.assert_array_equal(before["gain_weights"], after["gain_weights"])
        self.assertEqual(engine.get_weights().meta.training_samples, 2)

    def test_ground_truth_targets(self):
        engine = _make_engine()
        result = engine.train([_make_sample(ground_truth=True)], epochs=2)
        self.assertEqual(result.n_steps, 18)
        self.assertEqual(result.epochs, 2)

    def test_no_targets(self):
        from affectcast.models.state import TrainingSample
        engine = _make_engine()
        result = engine.train([TrainingSample(observations=np.zeros((1, 5)))])
        self.assertEqual(result.n_steps, 0)
        self.assertTrue(math.isinf(result.loss))
        self.assertIsNotNone(result.error)


class TestPersistence(unittest.TestCase):

    def test_json_round_trip(self):
        from affectcast.models.kalmanformer import KalmanFormerWeights
        source = _make_engine(random_state=1)
        payload = json.loads(json.dumps(source.get_weights().to_dict()))
        target = _make_engine(random_state=2)
        target.load_weights(KalmanFormerWeights.from_dict(payload))

        obs = [0.2, -0.1, 0.4, 0.1, 0.3]
        a = source.predict(source.initialize_state(obs, _T0), 4)
        b = target.predict(target.initialize_state(obs, _T0), 4)
        np.testing.assert_allclose(a.blended_prediction, b.blended_prediction)

    def test_shape_mismatch_rejected(self):
        source = _make_engine()
        target = _make_engine(embed_dim=32)
        with self.assertRaises(ValueError):
            target.load_weights(source.get_weights())


class TestInterop(unittest.TestCase):

    def test_plrnn_state_conversion(self):
        engine = _make_engine()
        state = _run_updates(engine, engine.initialize_state(np.zeros(5), _T0), 3)
        plrnn_state = engine.to_plrnn_state(state)
        np.testing.assert_allclose(plrnn_state.observed_state, state.estimate)
        np.testing.assert_allclose(
            plrnn_state.uncertainty, np.diag(state.kalman_state.error_covariance)
        )
        self.assertEqual(plrnn_state.timestep, 3)

        back = engine.from_plrnn_state(plrnn_state)
        np.testing.assert_allclose(back.estimate, plrnn_state.observed_state)
        np.testing.assert_allclose(
            np.diag(back.kalman_state.error_covariance), plrnn_state.uncertainty
        )
        self.assertEqual(back.kalman_state.timestep, 3)


if __name__ == "__main__":
    unittest.main()

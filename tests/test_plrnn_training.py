"""PLRNN training tests -- online/batch training on the engine and the
multi-epoch truncated-BPTT trainer.
"""

from __future__ import annotations

import math
import unittest
from datetime import datetime, timedelta, timezone

import numpy as np


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def _make_engine(**overrides):
    from affectcast.models.plrnn import create_plrnn_engine
    return create_plrnn_engine(dict(overrides))


def _make_sample(steps: int = 30, phase: float = 0.0, user: str = "u1"):
    """Slow sinusoidal drift in every dimension."""
    from affectcast.models.state import TrainingSample
    t = np.arange(steps)[:, None]
    offsets = np.linspace(0.0, 1.0, 5)[None, :]
    obs = 0.5 * np.sin(2 * np.pi * t / 24.0 + phase + offsets)
    return TrainingSample(
        observations=obs,
        timestamps=[_T0 + timedelta(hours=i) for i in range(steps)],
        user_id=user,
    )


def _make_constant_sample(value: float = 0.3, steps: int = 10):
    from affectcast.models.state import TrainingSample
    return TrainingSample(
        observations=np.full((steps, 5), value),
        timestamps=[_T0 + timedelta(hours=i) for i in range(steps)],
    )


# ===========================================================================
# Engine-level training
# ===========================================================================


class TestTrainOnline(unittest.TestCase):

    def test_requires_initialization(self):
        from affectcast.models.plrnn import PLRNNEngine
        from affectcast.models.state import EngineNotInitializedError
        with self.assertRaises(EngineNotInitializedError):
            PLRNNEngine().train_online(_make_sample())

    def test_short_sample_is_reported(self):
        from affectcast.models.state import TrainingSample
        engine = _make_engine()
        result = engine.train_online(TrainingSample(observations=np.zeros((1, 5))))
        self.assertTrue(math.isinf(result.loss))
        self.assertFalse(result.converged)
        self.assertIsNotNone(result.error)

    def test_training_updates_weights_and_metadata(self):
        engine = _make_engine()
        before = engine.get_weights()
        result = engine.train_online(_make_sample())
        after = engine.get_weights()

        self.assertTrue(np.isfinite(result.loss))
        self.assertEqual(result.epochs, 1)
        self.assertFalse(np.allclose(before.bias_latent, after.bias_latent))
        np.testing.assert_array_equal(np.diag(after.W), np.zeros(5))
        self.assertEqual(after.meta.training_samples, 1)
        self.assertIsNotNone(after.meta.trained_at)
        self.assertEqual(engine.training_history, [result.loss])

    def test_repeated_training_reduces_loss(self):
        engine = _make_engine(learning_rate=0.01, teacher_forcing_ratio=1.0)
        sample = _make_constant_sample()
        first = engine.train_online(sample).loss
        for _ in range(60):
            last = engine.train_online(sample).loss
        self.assertLess(last, first)


class TestTrainBatch(unittest.TestCase):

    def test_batch_averages_valid_samples(self):
        from affectcast.models.state import TrainingSample
        engine = _make_engine()
        samples = [
            _make_sample(),
            TrainingSample(observations=np.zeros((1, 5))),
            _make_sample(phase=1.0),
        ]
        result = engine.train_batch(samples)
        self.assertEqual(result.epochs, 3)
        self.assertEqual(len(result.loss_history), 2)
        self.assertAlmostEqual(result.loss, float(np.mean(result.loss_history)))
        self.assertFalse(result.cancelled)

    def test_callback_can_cancel(self):
        engine = _make_engine()
        seen = []

        def _callback(index, result):
            seen.append(index)
            return False

        result = engine.train_batch([_make_sample(), _make_sample(), _make_sample()], _callback)
        self.assertEqual(seen, [0])
        self.assertTrue(result.cancelled)
        self.assertEqual(result.epochs, 1)

    def test_no_valid_samples(self):
        from affectcast.models.state import TrainingSample
        engine = _make_engine()
        result = engine.train_batch([TrainingSample(observations=np.zeros((1, 5)))])
        self.assertTrue(math.isinf(result.loss))
        self.assertFalse(result.converged)
        self.assertIsNotNone(result.error)


# ===========================================================================
# Multi-epoch trainer
# ===========================================================================


class TestTrainerHelpers(unittest.TestCase):

    def test_split_sample(self):
        from affectcast.models.plrnn_trainer import split_sample
        train, val = split_sample(_make_sample(steps=10), 0.2)
        self.assertEqual(len(train), 8)
        self.assertEqual(len(val), 3)
        # validation starts at the last training observation
        np.testing.assert_array_equal(val.observations[0], train.observations[-1])
        self.assertEqual(val.timestamps[0], train.timestamps[-1])

    def test_split_too_short(self):
        from affectcast.models.plrnn_trainer import split_sample
        sample = _make_sample(steps=4)
        train, val = split_sample(sample, 0.2)
        self.assertIs(train, sample)
        self.assertIsNone(val)

    def test_cosine_schedule(self):
        from affectcast.models.plrnn_trainer import cosine_lr
        self.assertAlmostEqual(cosine_lr(0.01, 0, 10, 0.1), 0.01)
        self.assertAlmostEqual(cosine_lr(0.01, 9, 10, 0.1), 0.001)
        self.assertAlmostEqual(cosine_lr(0.01, 0, 1, 0.1), 0.01)
        self.assertGreater(cosine_lr(0.01, 3, 10, 0.1), cosine_lr(0.01, 6, 10, 0.1))

    def test_one_step_loss_is_finite(self):
        from affectcast.models.plrnn_trainer import one_step_loss
        self.assertTrue(np.isfinite(one_step_loss(_make_engine(), _make_sample())))

    def test_config_validation(self):
        from affectcast.models.plrnn_trainer import TrainerConfig
        with self.assertRaises(ValueError):
            TrainerConfig(bptt_window=0)
        with self.assertRaises(ValueError):
            TrainerConfig(validation_fraction=1.0)

    def test_config_from_mapping_warns_on_unknown(self):
        from affectcast.models.plrnn_trainer import TrainerConfig
        with self.assertLogs("affectcast.models.plrnn_trainer", level="WARNING"):
            cfg = TrainerConfig.from_mapping({"epochs": 3, "momentum": 0.9})
        self.assertEqual(cfg.epochs, 3)

    def test_load_trainer_config(self):
        from affectcast.models.plrnn_trainer import load_trainer_config
        cfg = load_trainer_config()
        self.assertEqual(cfg.epochs, 30)
        self.assertEqual(cfg.bptt_window, 8)


class TestTrainPLRNN(unittest.TestCase):

    def test_no_usable_samples(self):
        from affectcast.models.plrnn_trainer import TrainerConfig, train_plrnn
        from affectcast.models.state import TrainingSample
        engine = _make_engine()
        result = train_plrnn(
            engine, [TrainingSample(observations=np.zeros((1, 5)))], TrainerConfig(epochs=2)
        )
        self.assertEqual(result.epochs, 0)
        self.assertIsNotNone(result.error)
        self.assertFalse(result.converged)

    def test_training_run(self):
        from affectcast.models.plrnn_trainer import TrainerConfig, train_plrnn
        engine = _make_engine()
        samples = [_make_sample(phase=p) for p in (0.0, 0.7, 1.4)]
        result = train_plrnn(
            engine, samples, TrainerConfig(epochs=3, bptt_window=4, patience=10)
        )
        self.assertIsNone(result.error)
        self.assertEqual(result.epochs, 3)
        self.assertEqual(len(result.loss_history), 3)
        self.assertTrue(np.isfinite(result.validation_loss))
        meta = engine.get_weights().meta
        self.assertEqual(meta.training_samples, 3)
        self.assertAlmostEqual(meta.validation_loss, result.validation_loss)
        self.assertIsNotNone(meta.trained_at)
        np.testing.assert_array_equal(np.diag(engine.get_weights().W), np.zeros(5))

    def test_callback_cancels(self):
        from affectcast.models.plrnn_trainer import TrainerConfig, train_plrnn
        engine = _make_engine()
        calls = []

        def _callback(epoch, train_loss, val_loss):
            calls.append((epoch, train_loss, val_loss))
            return False

        result = train_plrnn(engine, [_make_sample()], TrainerConfig(epochs=5), _callback)
        self.assertTrue(result.cancelled)
        self.assertEqual(result.epochs, 1)
        self.assertEqual(len(calls), 1)

    def test_result_to_dict_handles_infinity(self):
        from affectcast.models.state import TrainingResult
        out = TrainingResult(
            loss=float("inf"), validation_loss=float("inf"), epochs=0,
            training_time=0.0, converged=False,
        ).to_dict()
        self.assertEqual(out["loss"], "inf")


if __name__ == "__main__":
    unittest.main()

"""CLI smoke tests (main.py subcommands end to end)."""

from __future__ import annotations

import json
import os
import tempfile
import unittest

import numpy as np
import pandas as pd


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_log(path: str, n: int = 30) -> None:
    rng = np.random.default_rng(0)
    ts = pd.date_range("2024-01-01", periods=n, freq="1h", tz="UTC")
    df = pd.DataFrame({
        "user_id": "u1",
        "timestamp": ts,
        "valence": np.sin(np.arange(n) / 4.0) + rng.normal(0, 0.05, n),
        "arousal": rng.normal(0, 0.2, n),
        "dominance": 0.5 + rng.normal(0, 0.1, n),
        "risk": 0.1 + rng.normal(0, 0.02, n),
        "resources": 0.5 + rng.normal(0, 0.1, n),
    })
    df.to_csv(path, index=False)


class TestCLI(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def _out(self, name: str) -> str:
        return os.path.join(self.tmp, name)

    def _read(self, name: str) -> dict:
        with open(self._out(name), "r", encoding="utf-8") as fh:
            return json.load(fh)

    def test_simulate(self):
        from main import main
        rc = main([
            "simulate", "--observation", "-0.5", "0.3", "0.4", "0.2", "0.5",
            "--target", "valence", "--mode", "increase", "--output", self._out("sim.json"),
        ])
        self.assertEqual(rc, 0)
        self.assertEqual(self._read("sim.json")["target"]["dimension"], "valence")

    def test_causal_without_state(self):
        from main import main
        rc = main(["causal", "--output", self._out("net.json")])
        self.assertEqual(rc, 0)
        self.assertEqual(len(self._read("net.json")["nodes"]), 5)

    def test_bad_observation_fails(self):
        from main import main
        rc = main(["simulate", "--observation", "0.1", "0.2", "--target", "valence"])
        self.assertEqual(rc, 1)

    def test_missing_belief_file_fails(self):
        from main import main
        rc = main(["forecast", "--belief", self._out("absent.json")])
        self.assertEqual(rc, 1)

    def test_forecast_from_belief_file(self):
        from main import main
        belief = {
            "valence": {"mean": 0.2, "variance": 0.05},
            "arousal": {"mean": 0.1, "variance": 0.05},
            "risk": {"mean": 0.1, "variance": 0.02},
            "user_id": "u1",
        }
        with open(self._out("belief.json"), "w", encoding="utf-8") as fh:
            json.dump(belief, fh)
        rc = main([
            "forecast", "--belief", self._out("belief.json"),
            "--horizons", "6h", "--output", self._out("fc.json"),
        ])
        self.assertEqual(rc, 0)
        out = self._read("fc.json")
        self.assertEqual(out["6h"]["horizon"], "short")
        self.assertEqual(out["6h"]["primary_engine"], "kalmanformer")

    def test_train_then_forecast(self):
        from main import main
        _write_log(self._out("obs.csv"))
        weights = self._out("weights")
        rc = main([
            "train", "--data", self._out("obs.csv"), "--output-dir", weights,
            "--epochs", "2", "--skip-kalmanformer", "--output", self._out("summary.json"),
        ])
        self.assertEqual(rc, 0)
        self.assertTrue(os.path.exists(os.path.join(weights, "plrnn_weights.json")))
        self.assertTrue(os.path.exists(os.path.join(weights, "normalization.csv")))
        self.assertFalse(os.path.exists(os.path.join(weights, "kalmanformer_weights.json")))
        self.assertIn("plrnn", self._read("summary.json"))

        rc = main([
            "causal", "--weights-dir", weights,
            "--observation", "0.2", "0.1", "0.5", "0.1", "0.5",
            "--output", self._out("net.json"),
        ])
        self.assertEqual(rc, 0)


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python3
"""affectcast -- CLI entry point.

Usage:
    python main.py train --data observations.csv --output-dir weights
    python main.py forecast --belief belief.json --weights-dir weights
    python main.py forecast --observation 0.2 0.1 0.5 0.1 0.5 --horizons 6h 24h
    python main.py causal --weights-dir weights
    python main.py simulate --observation -0.5 0.3 0.4 0.2 0.5 \\
        --target valence --mode increase --magnitude 0.5
    python main.py --help

Observation logs are CSV files with a timestamp column, an optional
user column and one column per state dimension (valence, arousal,
dominance, risk, resources).  Belief files are JSON objects mapping
each dimension to ``{"mean": ..., "variance": ...}``.  Weights are stored
as JSON bundles in ``--weights-dir``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Early setup: configure logging before any affectcast imports
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("affectcast.main")

_PLRNN_WEIGHTS_FILE = "plrnn_weights.json"
_KF_WEIGHTS_FILE = "kalmanformer_weights.json"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_json(payload: Any, output: str | None) -> None:
    text = json.dumps(payload, indent=2, default=str)
    if not output:
        print(text)
        return
    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(text)
    logger.info("Output saved: %s", path)


def _load_json(path: Path) -> dict:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def _build_engines(weights_dir: str | None, need_kf: bool = True):
    """PLRNN (and optionally KalmanFormer) from saved weights or fresh init."""
    from affectcast.models.kalmanformer import (
        KalmanFormerWeights,
        create_kalmanformer_engine,
        load_kalmanformer_config,
    )
    from affectcast.models.plrnn import create_plrnn_engine, load_plrnn_config
    from affectcast.models.state import PLRNNWeights

    plrnn = create_plrnn_engine(load_plrnn_config())
    kf = create_kalmanformer_engine(load_kalmanformer_config()) if need_kf else None

    if weights_dir:
        base = Path(weights_dir)
        p_path = base / _PLRNN_WEIGHTS_FILE
        if p_path.exists():
            plrnn.load_weights(PLRNNWeights.from_dict(_load_json(p_path)))
        else:
            logger.warning("No PLRNN weights at %s -- using fresh initialisation", p_path)
        k_path = base / _KF_WEIGHTS_FILE
        if kf is not None and k_path.exists():
            kf.load_weights(KalmanFormerWeights.from_dict(_load_json(k_path)))
        elif kf is not None:
            logger.warning("No KalmanFormer weights at %s -- using fresh initialisation", k_path)

    if kf is not None:
        plrnn.attach_kalman_former(kf)
    return plrnn, kf


def _belief_from_args(args: argparse.Namespace):
    from affectcast.belief.belief_state import BeliefState, Posterior
    from affectcast.constants import DEFAULT_VARIANCE, DIMENSIONS

    if args.belief:
        data = _load_json(Path(args.belief))
        update = {d: data[d] for d in DIMENSIONS if data.get(d) is not None}
        return BeliefState.from_update(
            update,
            user_id=data.get("user_id"),
            overall_confidence=float(data.get("overall_confidence", 0.5)),
        )
    if args.observation:
        if len(args.observation) != len(DIMENSIONS):
            raise ValueError(
                f"--observation needs {len(DIMENSIONS)} values ({', '.join(DIMENSIONS)})"
            )
        return BeliefState.from_update({
            d: Posterior(mean=v, variance=DEFAULT_VARIANCE)
            for d, v in zip(DIMENSIONS, args.observation)
        })
    raise ValueError("Provide --belief or --observation")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_train(args: argparse.Namespace) -> int:
    from affectcast.models.plrnn_trainer import load_trainer_config, train_plrnn
    from affectcast.models.training_data import load_observations_csv, samples_from_config

    logger.info("Step 1: Loading observations from %s", args.data)
    df = load_observations_csv(args.data)
    data = samples_from_config(df)
    if data.error:
        logger.error("Could not build training samples: %s", data.error)
        return 1
    if not data.samples:
        logger.error("No training samples (all segments shorter than the minimum)")
        return 1

    plrnn, kf = _build_engines(args.weights_dir, need_kf=not args.skip_kalmanformer)

    logger.info("Step 2: Training PLRNN on %d sequences", len(data.samples))
    trainer_cfg = load_trainer_config()
    if args.epochs:
        trainer_cfg.epochs = args.epochs
    result = train_plrnn(plrnn, data.samples, trainer_cfg)
    if result.error:
        logger.warning("PLRNN training: %s", result.error)

    summary: dict[str, Any] = {"plrnn": result.to_dict()}
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    _write_json(plrnn.get_weights().to_dict(), str(output_dir / _PLRNN_WEIGHTS_FILE))

    if kf is not None:
        logger.info("Step 3: Training KalmanFormer heads")
        kf_result = kf.train(data.samples, epochs=args.kf_epochs)
        if kf_result.error:
            logger.warning("KalmanFormer training: %s", kf_result.error)
        summary["kalmanformer"] = {
            "loss": kf_result.loss,
            "kalman_loss": kf_result.kalman_loss,
            "attention_loss": kf_result.attention_loss,
            "n_steps": kf_result.n_steps,
            "error": kf_result.error,
        }
        _write_json(kf.get_weights().to_dict(), str(output_dir / _KF_WEIGHTS_FILE))
    else:
        logger.info("Step 3: Skipped (--skip-kalmanformer)")

    if not data.normalization.empty:
        data.normalization.to_csv(output_dir / "normalization.csv")
    summary["plrnn_complexity"] = plrnn.get_complexity_metrics()
    _write_json(summary, args.output)
    return 0


def _cmd_forecast(args: argparse.Namespace) -> int:
    from affectcast.belief.adapter import BeliefStateAdapter

    belief = _belief_from_args(args)
    plrnn, kf = _build_engines(args.weights_dir)
    adapter = BeliefStateAdapter(plrnn, kf)

    forecasts = adapter.forecast(belief, args.horizons)
    payload: dict[str, Any] = {label: f.to_dict() for label, f in forecasts.items()}
    if args.hybrid:
        payload["hybrid"] = {
            h: adapter.predict_hybrid(belief, h).to_dict() for h in ("short", "medium", "long")
        }
    _write_json(payload, args.output)
    return 0


def _cmd_causal(args: argparse.Namespace) -> int:
    from affectcast.belief.adapter import BeliefStateAdapter

    plrnn, _ = _build_engines(args.weights_dir, need_kf=False)
    adapter = BeliefStateAdapter(plrnn)
    belief = _belief_from_args(args) if (args.belief or args.observation) else None
    network = adapter.extract_causal_network(belief)
    _write_json(network.to_dict(), args.output)
    return 0


def _cmd_simulate(args: argparse.Namespace) -> int:
    from affectcast.belief.adapter import BeliefStateAdapter

    belief = _belief_from_args(args)
    plrnn, _ = _build_engines(args.weights_dir, need_kf=False)
    adapter = BeliefStateAdapter(plrnn)
    sim = adapter.simulate_intervention(belief, args.target, args.mode, args.magnitude)
    _write_json(sim.to_dict(), args.output)
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def _add_state_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--belief", type=str, default="",
        help="JSON file with per-dimension posteriors",
    )
    p.add_argument(
        "--observation", type=float, nargs="+", default=None,
        help="Five state values: valence arousal dominance risk resources",
    )


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to a subcommand."""
    parser = argparse.ArgumentParser(
        description="affectcast -- psychological state forecasting",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  python main.py train --data observations.csv --output-dir weights
  python main.py forecast --observation 0.2 0.1 0.5 0.1 0.5 --weights-dir weights
  python main.py causal --weights-dir weights
  python main.py simulate --observation -0.5 0.3 0.4 0.2 0.5 --target valence --mode increase
""",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_train = sub.add_parser("train", help="Fit both engines on an observation log")
    p_train.add_argument("--data", type=str, required=True, help="Observation CSV")
    p_train.add_argument(
        "--weights-dir", type=str, default="",
        help="Start from the weights in this directory (default: fresh init)",
    )
    p_train.add_argument(
        "--output-dir", type=str, default="weights",
        help="Directory for the trained weight bundles (default: weights/)",
    )
    p_train.add_argument(
        "--epochs", type=int, default=0,
        help="PLRNN epochs (default: from config)",
    )
    p_train.add_argument("--kf-epochs", type=int, default=1, help="KalmanFormer epochs")
    p_train.add_argument(
        "--skip-kalmanformer", action="store_true",
        help="Train the PLRNN only",
    )
    p_train.add_argument("--output", type=str, default="", help="Summary JSON path")

    p_fc = sub.add_parser("forecast", help="Forecast from a belief state")
    _add_state_args(p_fc)
    p_fc.add_argument("--weights-dir", type=str, default="")
    p_fc.add_argument(
        "--horizons", type=str, nargs="+", default=["6h", "24h", "72h"],
        help="Named horizons such as 6h, 24h, 3d (default: 6h 24h 72h)",
    )
    p_fc.add_argument(
        "--hybrid", action="store_true",
        help="Also report the short/medium/long hybrid forecasts",
    )
    p_fc.add_argument("--output", type=str, default="")

    p_causal = sub.add_parser("causal", help="Extract the causal network")
    _add_state_args(p_causal)
    p_causal.add_argument("--weights-dir", type=str, default="")
    p_causal.add_argument("--output", type=str, default="")

    p_sim = sub.add_parser("simulate", help="Simulate a sustained intervention")
    _add_state_args(p_sim)
    p_sim.add_argument("--weights-dir", type=str, default="")
    p_sim.add_argument("--target", type=str, required=True, help="Dimension to act on")
    p_sim.add_argument(
        "--mode", type=str, default="increase",
        choices=["increase", "decrease", "stabilize"],
    )
    p_sim.add_argument("--magnitude", type=float, default=0.5)
    p_sim.add_argument("--output", type=str, default="")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    commands = {
        "train": _cmd_train,
        "forecast": _cmd_forecast,
        "causal": _cmd_causal,
        "simulate": _cmd_simulate,
    }
    try:
        return commands[args.command](args)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())

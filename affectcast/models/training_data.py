"""Turn tabular observation logs into engine training samples.

Input is a long-format DataFrame with one row per observation::

    user_id | timestamp | valence | arousal | dominance | risk | resources

Observations arrive at irregular times, so for each user the log is
placed on a regular grid (``resample_rule``), short gaps (up to
``max_gap_hours``) are time-interpolated, and longer gaps split the
sequence into separate samples.  Optionally every user's series is
z-scored with that user's own statistics (per-participant
normalisation), which are returned so forecasts can be mapped back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from affectcast.config_loader import get_section
from affectcast.constants import DIMENSIONS, NEUTRAL_MEANS
from affectcast.models.state import TrainingSample

logger = logging.getLogger(__name__)

_DEFAULT_USER: str = "default"
_MIN_STD: float = 1e-8


@dataclass
class TrainingDataResult:
    """Samples plus the bookkeeping needed to interpret them."""

    samples: list[TrainingSample] = field(default_factory=list)
    normalization: pd.DataFrame = field(default_factory=pd.DataFrame)  # index user, cols mean_/std_
    n_users: int = 0
    n_segments_dropped: int = 0
    error: str | None = None


def load_observations_csv(path: str | Path, time_column: str = "timestamp") -> pd.DataFrame:
    """Read an observation log; timestamps are parsed as UTC."""
    df = pd.read_csv(path)
    if time_column not in df.columns:
        raise ValueError(f"{path}: missing time column {time_column!r}")
    df[time_column] = pd.to_datetime(df[time_column], utc=True)
    return df


def _bridge_short_gaps(frame: pd.DataFrame, max_missing: int) -> pd.DataFrame:
    """Time-interpolate NaN runs of at most ``max_missing`` rows.

    Longer runs stay NaN entirely (``interpolate(limit=...)`` alone would
    fill their first rows).
    """
    filled = frame.interpolate(method="time", limit_area="inside")
    for col in frame.columns:
        isna = frame[col].isna()
        run_id = (isna != isna.shift()).cumsum()
        run_len = isna.groupby(run_id).transform("sum")
        filled.loc[isna & (run_len > max_missing), col] = np.nan
    return filled


def _segments(frame: pd.DataFrame, min_observations: int) -> tuple[list[pd.DataFrame], int]:
    """Split a gridded frame at rows that still contain NaN."""
    valid = frame.notna().all(axis=1)
    seg_id = (valid != valid.shift()).cumsum()
    kept, dropped = [], 0
    for _, seg in frame[valid].groupby(seg_id[valid]):
        if len(seg) >= min_observations:
            kept.append(seg)
        else:
            dropped += 1
    return kept, dropped


def frame_to_samples(
    df: pd.DataFrame,
    *,
    time_column: str = "timestamp",
    user_column: str = "user_id",
    columns: Sequence[str] = DIMENSIONS,
    resample_rule: str = "1h",
    max_gap_hours: float = 6.0,
    min_observations: int = 2,
    normalize: bool = True,
) -> TrainingDataResult:
    """Build training samples from an observation log.

    Parameters
    ----------
    df:
        Long-format log.  Dimension columns that are absent are filled
        with their neutral value; at least one must be present.
    time_column, user_column:
        Column names.  Without a user column all rows belong to one user.
    resample_rule:
        Grid spacing, e.g. ``"1h"``.
    max_gap_hours:
        Longest gap bridged by interpolation.
    min_observations:
        Shorter segments are dropped.
    normalize:
        Z-score each user's series with that user's mean/std.

    Returns
    -------
    TrainingDataResult
    """
    result = TrainingDataResult()

    present = [c for c in columns if c in df.columns]
    if not present:
        result.error = f"None of the state columns {list(columns)} found"
        return result
    if time_column not in df.columns:
        result.error = f"Missing time column {time_column!r}"
        return result

    data = df.copy()
    data[time_column] = pd.to_datetime(data[time_column], utc=True)
    for c in columns:
        if c not in data.columns:
            logger.warning("Column %s missing -- filled with neutral value", c)
            data[c] = NEUTRAL_MEANS.get(c, 0.0)
    if user_column not in data.columns:
        data[user_column] = _DEFAULT_USER

    step = pd.Timedelta(resample_rule)
    # a gap of max_gap_hours between observations leaves this many empty rows
    max_missing = max(int(pd.Timedelta(hours=max_gap_hours) / step) - 1, 0)
    norm_rows = {}

    for user, group in data.groupby(user_column, sort=True):
        # 1. Regular grid (mean of observations falling in one bucket)
        series = (
            group.set_index(time_column)[list(columns)]
            .astype(float)
            .sort_index()
            .resample(resample_rule)
            .mean()
        )

        # 2. Bridge short gaps only
        if max_missing > 0:
            series = _bridge_short_gaps(series, max_missing)

        # 3. Per-participant normalisation
        if normalize:
            mean = series.mean()
            std = series.std(ddof=0).where(lambda s: s > _MIN_STD, 1.0).fillna(1.0)
            series = (series - mean) / std
            norm_rows[user] = {
                **{f"mean_{c}": float(mean[c]) for c in columns},
                **{f"std_{c}": float(std[c]) for c in columns},
            }

        # 4. Split at long gaps
        segments, dropped = _segments(series, min_observations)
        result.n_segments_dropped += dropped
        for seg in segments:
            result.samples.append(TrainingSample(
                observations=seg.to_numpy(dtype=np.float64),
                timestamps=[ts.to_pydatetime() for ts in seg.index],
                user_id=str(user),
            ))
        result.n_users += 1

    if norm_rows:
        result.normalization = pd.DataFrame.from_dict(norm_rows, orient="index")
        result.normalization.index.name = user_column

    logger.info(
        "Built %d training samples from %d users (%d short segments dropped)",
        len(result.samples), result.n_users, result.n_segments_dropped,
    )
    return result


def samples_from_config(df: pd.DataFrame) -> TrainingDataResult:
    """:func:`frame_to_samples` with the ``training_data`` config section."""
    cfg = get_section("training_data")
    return frame_to_samples(
        df,
        time_column=cfg.get("time_column", "timestamp"),
        user_column=cfg.get("user_column", "user_id"),
        resample_rule=cfg.get("resample_rule", "1h"),
        max_gap_hours=float(cfg.get("max_gap_hours", 6.0)),
        min_observations=int(cfg.get("min_observations", 2)),
        normalize=bool(cfg.get("normalize", True)),
    )


def denormalize(values: np.ndarray, normalization: pd.DataFrame, user_id: str,
                columns: Sequence[str] = DIMENSIONS) -> np.ndarray:
    """Map normalised state vectors back to a user's original scale."""
    if normalization.empty or user_id not in normalization.index:
        return np.asarray(values, dtype=np.float64)
    row = normalization.loc[user_id]
    mean = np.array([row[f"mean_{c}"] for c in columns])
    std = np.array([row[f"std_{c}"] for c in columns])
    return np.asarray(values, dtype=np.float64) * std + mean

"""Global constants for the affectcast forecasting core."""

# ---------------------------------------------------------------------------
# State dimensions -- fixed order shared by every engine and the adapter
# ---------------------------------------------------------------------------
DIMENSIONS: tuple[str, ...] = (
    "valence",
    "arousal",
    "dominance",
    "risk",
    "resources",
)
DIMENSION_INDEX: dict[str, int] = {name: i for i, name in enumerate(DIMENSIONS)}
STATE_DIM: int = len(DIMENSIONS)

# ---------------------------------------------------------------------------
# Numerical safety
# ---------------------------------------------------------------------------
EPSILON: float = 1e-9
CLAMP_VALUE: float = 10.0  # all latent/observed components live in [-10, 10]

# 95% two-sided normal quantile used for every confidence interval
CI_Z_SCORE: float = 1.96
CI_LEVEL: float = 0.95

# ---------------------------------------------------------------------------
# Forecast horizons
# ---------------------------------------------------------------------------
# Hybrid horizon policy: label -> number of steps
HYBRID_HORIZON_STEPS: dict[str, int] = {
    "short": 3,
    "medium": 12,
    "long": 48,
}

# Named horizons handed to downstream consumers (hours ahead)
FORECAST_HORIZONS: dict[str, int] = {
    "6h": 6,
    "24h": 24,
    "72h": 72,
}

# Intervention simulation runs this many steps
INTERVENTION_HORIZON: int = 24

# ---------------------------------------------------------------------------
# Belief-state neutral defaults (used when a posterior is missing)
# ---------------------------------------------------------------------------
NEUTRAL_MEANS: dict[str, float] = {
    "valence": 0.0,
    "arousal": 0.0,
    "dominance": 0.5,
    "risk": 0.1,
    "resources": 0.5,
}
DEFAULT_VARIANCE: float = 0.1

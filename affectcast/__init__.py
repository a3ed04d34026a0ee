"""affectcast -- forecasting core for psychological state dynamics.

Two engines advance a five-dimensional state (valence, arousal,
dominance, risk, resources): a piecewise-linear recurrent network for
long-range dynamics, causal structure and intervention simulation, and
a Kalman filter fused with self-attention for short-range tracking of
irregular observations.  The belief adapter bridges both engines to an
external Bayesian belief state.
"""

__version__ = "0.1.0"

"""Self-attention encoder over a bounded observation history.

A small post-norm transformer encoder written directly in numpy:

    e_t = obs_t @ W_obs + b_obs + time(t)        (cached per observation)
    h_0 = [e_1 + pos_1, ..., e_T + pos_T]
    for each layer:
        h = LN(h + MHA(h))
        h = LN(h + FFN(h))

``time(t)`` is a sinusoidal encoding of hour-of-day (even channels) and
day-of-week (odd channels), a learned projection of the same cyclic
features, or nothing.  Positions use the standard sinusoidal table.

The encoder carries no mutable state besides its parameters; dropout is
applied only when an explicit ``rng`` is passed during training.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import numpy as np

from affectcast.models.linalg import layer_norm, relu, softmax

logger = logging.getLogger(__name__)

_FFN_EXPANSION: int = 4
TIME_EMBEDDINGS: tuple[str, ...] = ("sinusoidal", "learned", "none")


def sinusoidal_positions(max_len: int, embed_dim: int) -> np.ndarray:
    """Standard ``sin``/``cos`` positional table of shape (max_len, embed_dim)."""
    pos = np.arange(max_len)[:, None]
    i = np.arange(embed_dim)[None, :]
    angle = pos / np.power(10000.0, (2 * (i // 2)) / embed_dim)
    return np.where(i % 2 == 0, np.sin(angle), np.cos(angle))


def cyclic_time_features(ts: datetime) -> np.ndarray:
    """``[sin(hour), cos(hour), sin(weekday), cos(weekday)]`` on the unit circle."""
    hour = ts.hour + ts.minute / 60.0
    dow = ts.weekday()
    return np.array([
        np.sin(2 * np.pi * hour / 24.0),
        np.cos(2 * np.pi * hour / 24.0),
        np.sin(2 * np.pi * dow / 7.0),
        np.cos(2 * np.pi * dow / 7.0),
    ])


class AttentionEncoder:
    """Multi-layer, multi-head self-attention encoder.

    Parameters
    ----------
    obs_dim:
        Width of the raw observation vectors.
    embed_dim:
        Model width; must be divisible by ``num_heads``.
    num_heads, num_layers:
        Encoder shape.
    context_window:
        Maximum sequence length (size of the positional table).
    time_embedding:
        ``"sinusoidal"``, ``"learned"`` or ``"none"``.
    temperature:
        Divides the attention logits; >1 flattens attention.
    dropout:
        Dropout rate used only in training mode.
    rng:
        Generator used for parameter initialisation.
    """

    def __init__(
        self,
        obs_dim: int,
        embed_dim: int = 64,
        num_heads: int = 4,
        num_layers: int = 2,
        context_window: int = 24,
        time_embedding: str = "sinusoidal",
        temperature: float = 1.0,
        dropout: float = 0.1,
        rng: np.random.Generator | None = None,
    ) -> None:
        if embed_dim % num_heads != 0:
            raise ValueError(
                f"embed_dim ({embed_dim}) must be divisible by num_heads ({num_heads})"
            )
        if time_embedding not in TIME_EMBEDDINGS:
            raise ValueError(f"Unknown time_embedding: {time_embedding!r}")
        if temperature <= 0:
            raise ValueError(f"temperature must be positive, got {temperature}")

        self.obs_dim = obs_dim
        self.embed_dim = embed_dim
        self.num_heads = num_heads
        self.num_layers = num_layers
        self.head_dim = embed_dim // num_heads
        self.context_window = context_window
        self.time_embedding = time_embedding
        self.temperature = temperature
        self.dropout = dropout

        self.positions = sinusoidal_positions(context_window, embed_dim)
        self._time_table = np.power(10000.0, np.arange(0, embed_dim, 2) / embed_dim)
        self.params = self._init_params(rng or np.random.default_rng(42))

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def _init_params(self, rng: np.random.Generator) -> dict[str, np.ndarray]:
        E = self.embed_dim
        F = E * _FFN_EXPANSION

        def xavier(rows: int, cols: int) -> np.ndarray:
            scale = np.sqrt(6.0 / (rows + cols))
            return rng.uniform(-scale, scale, size=(rows, cols))

        params: dict[str, np.ndarray] = {
            "obs_weight": xavier(self.obs_dim, E),
            "obs_bias": np.zeros(E),
        }
        if self.time_embedding == "learned":
            params["time_weight"] = xavier(4, E)

        for layer in range(self.num_layers):
            p = f"layer{layer}."
            for name in ("q", "k", "v", "o"):
                params[p + name] = xavier(E, E)
            params[p + "ffn_w1"] = xavier(E, F)
            params[p + "ffn_b1"] = np.zeros(F)
            params[p + "ffn_w2"] = xavier(F, E)
            params[p + "ffn_b2"] = np.zeros(E)
            for ln in ("ln1", "ln2"):
                params[p + ln + "_gamma"] = np.ones(E)
                params[p + ln + "_beta"] = np.zeros(E)
        return params

    def load_params(self, params: dict[str, Any]) -> None:
        """Replace parameters, checking names and shapes against the current set."""
        missing = sorted(set(self.params) - set(params))
        if missing:
            raise ValueError(f"Encoder parameters missing: {missing}")
        loaded = {}
        for name, current in self.params.items():
            arr = np.array(params[name], dtype=np.float64)
            if arr.shape != current.shape:
                raise ValueError(
                    f"Encoder parameter {name} has shape {arr.shape}, expected {current.shape}"
                )
            loaded[name] = arr
        self.params = loaded

    def parameter_count(self) -> int:
        return int(sum(p.size for p in self.params.values()))

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def embed(self, observation: np.ndarray, timestamp: datetime) -> np.ndarray:
        """Position-free embedding of one observation (safe to cache)."""
        e = observation @ self.params["obs_weight"] + self.params["obs_bias"]
        if self.time_embedding == "sinusoidal":
            hour_angle = 2 * np.pi * (timestamp.hour + timestamp.minute / 60.0) / 24.0
            dow_angle = 2 * np.pi * timestamp.weekday() / 7.0
            e = e.copy()
            n_even = e[0::2].shape[0]
            e[0::2] += np.sin(hour_angle / self._time_table[:n_even])
            n_odd = e[1::2].shape[0]
            e[1::2] += np.cos(dow_angle / self._time_table[:n_odd])
        elif self.time_embedding == "learned":
            e = e + cyclic_time_features(timestamp) @ self.params["time_weight"]
        return e

    def with_positions(self, embeddings: np.ndarray) -> np.ndarray:
        T = embeddings.shape[0]
        idx = np.arange(T) % self.context_window
        return embeddings + self.positions[idx]

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _split_heads(self, x: np.ndarray) -> np.ndarray:
        T = x.shape[0]
        return x.reshape(T, self.num_heads, self.head_dim).transpose(1, 0, 2)

    def _attention(self, h: np.ndarray, layer: int) -> tuple[np.ndarray, np.ndarray]:
        p = f"layer{layer}."
        q = self._split_heads(h @ self.params[p + "q"])
        k = self._split_heads(h @ self.params[p + "k"])
        v = self._split_heads(h @ self.params[p + "v"])
        scores = q @ k.transpose(0, 2, 1) / (np.sqrt(self.head_dim) * self.temperature)
        weights = softmax(scores, axis=-1)  # (heads, T, T)
        out = (weights @ v).transpose(1, 0, 2).reshape(h.shape[0], self.embed_dim)
        return out @ self.params[p + "o"], weights

    def _dropout(self, x: np.ndarray, rng: np.random.Generator | None) -> np.ndarray:
        if rng is None or self.dropout <= 0:
            return x
        keep = rng.random(x.shape) >= self.dropout
        return x * keep / (1.0 - self.dropout)

    def encode(
        self,
        embeddings: np.ndarray,
        rng: np.random.Generator | None = None,
    ) -> tuple[np.ndarray, list[np.ndarray]]:
        """Run the encoder over position-free embeddings.

        Parameters
        ----------
        embeddings:
            (T, embed_dim) cached observation embeddings.
        rng:
            When given, dropout is applied (training mode).

        Returns
        -------
        tuple
            ``(context, attention)`` -- the (T, embed_dim) encoded sequence
            and one (heads, T, T) attention tensor per layer.
        """
        if embeddings.shape[0] == 0:
            return np.zeros((0, self.embed_dim)), []

        h = self.with_positions(embeddings)
        maps: list[np.ndarray] = []
        for layer in range(self.num_layers):
            p = f"layer{layer}."
            attended, weights = self._attention(h, layer)
            maps.append(weights)
            h = layer_norm(
                h + self._dropout(attended, rng),
                self.params[p + "ln1_gamma"],
                self.params[p + "ln1_beta"],
            )
            ff = relu(h @ self.params[p + "ffn_w1"] + self.params[p + "ffn_b1"])
            ff = ff @ self.params[p + "ffn_w2"] + self.params[p + "ffn_b2"]
            h = layer_norm(
                h + self._dropout(ff, rng),
                self.params[p + "ln2_gamma"],
                self.params[p + "ln2_beta"],
            )
        return h, maps

    def attention_matrix(self, embeddings: np.ndarray) -> np.ndarray:
        """First-layer attention averaged over heads, shape (T, T)."""
        if embeddings.shape[0] == 0:
            return np.zeros((0, 0))
        _, weights = self._attention(self.with_positions(embeddings), 0)
        return weights.mean(axis=0)

"""Forecasting engines and their numerical building blocks.

plrnn             -- piecewise-linear RNN: prediction, causal network,
                     intervention simulation, online/batch training
plrnn_trainer     -- multi-epoch truncated-BPTT training with early stopping
kalmanformer      -- Kalman filter + self-attention hybrid tracker
attention         -- numpy multi-head self-attention encoder
early_warning     -- critical-slowing-down indicators
training_data     -- observation logs (pandas) -> training samples
state             -- shared value types
"""

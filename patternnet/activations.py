"""
activations.py
~~~~~~~~~~~~~~

Activation functions and their derivatives.

Every activation is a member of the closed ``Activation`` enum and carries
its own forward and derivative implementation, so an unknown name fails
loudly at configuration time instead of silently falling through.
"""

from enum import Enum
from typing import Union

import numpy as np

from patternnet.exceptions import ConfigurationError

LEAKY_RELU_SLOPE = 0.01


def _sigmoid(z: np.ndarray) -> np.ndarray:
    # Clip to keep np.exp from overflowing on large negative inputs
    return 1.0 / (1.0 + np.exp(-np.clip(z, -500.0, 500.0)))


def _softmax(z: np.ndarray) -> np.ndarray:
    shifted = np.exp(z - np.max(z))
    return shifted / np.sum(shifted)


class Activation(Enum):
    """Supported activation functions."""

    RELU = 'relu'
    LEAKY_RELU = 'leaky_relu'
    SIGMOID = 'sigmoid'
    TANH = 'tanh'
    SOFTMAX = 'softmax'
    LINEAR = 'linear'

    @classmethod
    def from_name(cls, value: Union[str, 'Activation']) -> 'Activation':
        """
        Resolve an activation from its name.

        Args:
            value: Enum member or its string name (``'leaky-relu'`` is
                accepted as an alias of ``'leaky_relu'``)

        Returns:
            Activation: The matching member

        Raises:
            ConfigurationError: If the name is unknown
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower().replace('-', '_'))
            except ValueError:
                pass
        raise ConfigurationError(f"Unknown activation: {value!r}")

    def apply(self, z: np.ndarray) -> np.ndarray:
        """Apply the activation to a pre-activation vector."""
        if self is Activation.RELU:
            return np.maximum(0.0, z)
        if self is Activation.LEAKY_RELU:
            return np.where(z > 0, z, LEAKY_RELU_SLOPE * z)
        if self is Activation.SIGMOID:
            return _sigmoid(z)
        if self is Activation.TANH:
            return np.tanh(z)
        if self is Activation.SOFTMAX:
            return _softmax(z)
        if self is Activation.LINEAR:
            return np.array(z, dtype=np.float64, copy=True)
        raise ConfigurationError(f"Unhandled activation: {self}")

    def derivative(self, z: np.ndarray) -> np.ndarray:
        """
        Elementwise derivative with respect to the pre-activation ``z``.

        Softmax returns the diagonal of its Jacobian, which is what an
        elementwise chain rule can use when softmax sits on a hidden layer.
        """
        if self is Activation.RELU:
            return (z > 0).astype(np.float64)
        if self is Activation.LEAKY_RELU:
            return np.where(z > 0, 1.0, LEAKY_RELU_SLOPE)
        if self is Activation.SIGMOID:
            s = _sigmoid(z)
            return s * (1.0 - s)
        if self is Activation.TANH:
            t = np.tanh(z)
            return 1.0 - t * t
        if self is Activation.SOFTMAX:
            s = _softmax(z)
            return s * (1.0 - s)
        if self is Activation.LINEAR:
            return np.ones_like(z, dtype=np.float64)
        raise ConfigurationError(f"Unhandled activation: {self}")

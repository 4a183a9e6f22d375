"""
losses.py
~~~~~~~~~

Loss functions paired with the output-layer error signal used by backprop.
"""

from enum import Enum
from typing import Union

import numpy as np

from patternnet.exceptions import ConfigurationError

# Probabilities are clipped into [EPSILON, 1 - EPSILON] before taking logs
EPSILON = 1e-7


class Loss(Enum):
    """Supported loss functions."""

    MSE = 'mse'
    CROSS_ENTROPY = 'cross_entropy'
    BINARY_CROSS_ENTROPY = 'binary_cross_entropy'

    @classmethod
    def from_name(cls, value: Union[str, 'Loss']) -> 'Loss':
        """Resolve a loss from its name, raising ``ConfigurationError`` if unknown."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower().replace('-', '_'))
            except ValueError:
                pass
        raise ConfigurationError(f"Unknown loss: {value!r}")

    def value_of(self, output: np.ndarray, target: np.ndarray) -> float:
        """
        Compute the loss for a single sample.

        Args:
            output: Network output vector
            target: Expected vector of the same length

        Returns:
            float: Mean squared error, summed cross-entropy, or mean binary
            cross-entropy depending on the member
        """
        if self is Loss.MSE:
            return float(np.mean((output - target) ** 2))
        clipped = np.clip(output, EPSILON, 1.0 - EPSILON)
        if self is Loss.CROSS_ENTROPY:
            return float(-np.sum(target * np.log(clipped)))
        if self is Loss.BINARY_CROSS_ENTROPY:
            terms = target * np.log(clipped) + (1.0 - target) * np.log(1.0 - clipped)
            return float(-np.mean(terms))
        raise ConfigurationError(f"Unhandled loss: {self}")

    def gradient(self, output: np.ndarray, target: np.ndarray) -> np.ndarray:
        """Error signal at the output layer for a single sample."""
        if self is Loss.MSE:
            return 2.0 * (output - target)
        if self is Loss.CROSS_ENTROPY:
            return output - target
        if self is Loss.BINARY_CROSS_ENTROPY:
            return (output - target) / (output * (1.0 - output) + EPSILON)
        raise ConfigurationError(f"Unhandled loss: {self}")

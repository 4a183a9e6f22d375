"""
optimizers.py
~~~~~~~~~~~~~

Gradient-descent variants and the per-layer state they accumulate.

State for each optimizer kind is allocated lazily the first time that kind
is used, and always mirrors the shapes of the parameters it accompanies.
"""

from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from patternnet.exceptions import ConfigurationError

ADAM_BETA1 = 0.9
ADAM_BETA2 = 0.999
RMSPROP_DECAY = 0.9
EPSILON = 1e-8

# (weight gradient, bias gradient) for one layer boundary
LayerTensors = Tuple[np.ndarray, np.ndarray]


class Optimizer(Enum):
    """Supported weight-update rules."""

    SGD = 'sgd'
    MOMENTUM = 'momentum'
    ADAM = 'adam'
    RMSPROP = 'rmsprop'

    @classmethod
    def from_name(cls, value: Union[str, 'Optimizer']) -> 'Optimizer':
        """Resolve an optimizer from its name, raising ``ConfigurationError`` if unknown."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ConfigurationError(f"Unknown optimizer: {value!r}")


class OptimizerState:
    """
    Per-layer optimizer accumulators for one network.

    Holds the momentum velocity, Adam first/second moments with a global
    step counter, and the RMSProp squared-gradient cache.
    """

    def __init__(self, shapes: Sequence[Tuple[Tuple[int, int], Tuple[int]]]):
        """
        Args:
            shapes: ``(weight_shape, bias_shape)`` for every layer boundary
        """
        self.shapes = list(shapes)
        self.velocity: Optional[List[LayerTensors]] = None
        self.adam_m: Optional[List[LayerTensors]] = None
        self.adam_v: Optional[List[LayerTensors]] = None
        self.adam_step = 0
        self.rmsprop_cache: Optional[List[LayerTensors]] = None

    def _zeros(self) -> List[LayerTensors]:
        return [(np.zeros(w_shape), np.zeros(b_shape))
                for w_shape, b_shape in self.shapes]

    def allocated(self) -> List[str]:
        """Names of the optimizer kinds that currently hold state."""
        kinds = []
        if self.velocity is not None:
            kinds.append(Optimizer.MOMENTUM.value)
        if self.adam_m is not None:
            kinds.append(Optimizer.ADAM.value)
        if self.rmsprop_cache is not None:
            kinds.append(Optimizer.RMSPROP.value)
        return kinds

    def ensure(self, optimizer: Optimizer) -> None:
        """Allocate zeroed state for ``optimizer`` if it has none yet."""
        if optimizer is Optimizer.MOMENTUM and self.velocity is None:
            self.velocity = self._zeros()
        elif optimizer is Optimizer.ADAM and self.adam_m is None:
            self.adam_m = self._zeros()
            self.adam_v = self._zeros()
            self.adam_step = 0
        elif optimizer is Optimizer.RMSPROP and self.rmsprop_cache is None:
            self.rmsprop_cache = self._zeros()


def apply_update(
    optimizer: Optimizer,
    weights: List[np.ndarray],
    biases: List[np.ndarray],
    gradients: Sequence[LayerTensors],
    state: OptimizerState,
    learning_rate: float,
    momentum: float = 0.9
) -> None:
    """
    Update ``weights`` and ``biases`` in place.

    Args:
        optimizer: Update rule to apply
        weights: Weight matrices, one per layer boundary
        biases: Bias vectors, one per layer boundary
        gradients: ``(dW, db)`` pairs aligned with ``weights``
        state: Accumulators owned by the same network
        learning_rate: Step size
        momentum: Velocity decay for ``Optimizer.MOMENTUM``
    """
    state.ensure(optimizer)

    if optimizer is Optimizer.SGD:
        for i, (grad_w, grad_b) in enumerate(gradients):
            weights[i] -= learning_rate * grad_w
            biases[i] -= learning_rate * grad_b

    elif optimizer is Optimizer.MOMENTUM:
        for i, (grad_w, grad_b) in enumerate(gradients):
            vel_w, vel_b = state.velocity[i]
            vel_w *= momentum
            vel_w -= learning_rate * grad_w
            vel_b *= momentum
            vel_b -= learning_rate * grad_b
            weights[i] += vel_w
            biases[i] += vel_b

    elif optimizer is Optimizer.ADAM:
        # One global step per update, shared by every layer
        state.adam_step += 1
        correction1 = 1.0 - ADAM_BETA1 ** state.adam_step
        correction2 = 1.0 - ADAM_BETA2 ** state.adam_step
        for i, (grad_w, grad_b) in enumerate(gradients):
            for param, grad, m, v in (
                (weights[i], grad_w, state.adam_m[i][0], state.adam_v[i][0]),
                (biases[i], grad_b, state.adam_m[i][1], state.adam_v[i][1]),
            ):
                m *= ADAM_BETA1
                m += (1.0 - ADAM_BETA1) * grad
                v *= ADAM_BETA2
                v += (1.0 - ADAM_BETA2) * grad * grad
                m_hat = m / correction1
                v_hat = v / correction2
                param -= learning_rate * m_hat / (np.sqrt(v_hat) + EPSILON)

    elif optimizer is Optimizer.RMSPROP:
        for i, (grad_w, grad_b) in enumerate(gradients):
            for param, grad, cache in (
                (weights[i], grad_w, state.rmsprop_cache[i][0]),
                (biases[i], grad_b, state.rmsprop_cache[i][1]),
            ):
                cache *= RMSPROP_DECAY
                cache += (1.0 - RMSPROP_DECAY) * grad * grad
                param -= learning_rate * grad / (np.sqrt(cache) + EPSILON)

    else:
        raise ConfigurationError(f"Unhandled optimizer: {optimizer}")

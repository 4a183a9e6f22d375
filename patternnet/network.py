"""
network.py
~~~~~~~~~~

Feed-forward neural network built directly on NumPy.

A ``Network`` owns its weights, biases and optimizer state outright; two
instances never share arrays. Inference and training use separate entry
points: ``forward_for_inference`` touches no state at all, while
``forward_for_training`` hands back an ``ActivationCache`` that the caller
threads into ``backward``.

Conventions:
    - weight matrix for layer ``i`` has shape ``(sizes[i], sizes[i+1])``
    - bias vector for layer ``i`` has shape ``(sizes[i+1],)``
    - inputs, targets and outputs are 1-D vectors (one sample at a time)
"""

import copy
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from patternnet.activations import Activation
from patternnet.exceptions import (
    ConfigurationError,
    InsufficientDataError,
    NumericalInstabilityError,
    ShapeMismatchError,
    StaleCacheError
)
from patternnet.losses import Loss
from patternnet.optimizers import Optimizer, OptimizerState, apply_update

logger = logging.getLogger(__name__)

INITIAL_BIAS = 0.01
DEFAULT_WEIGHT_SCALE = 0.01

Gradients = List[Tuple[np.ndarray, np.ndarray]]

ARCHITECTURE_ALIASES = {
    'inputSize': 'input_size',
    'hiddenLayers': 'hidden_layers',
    'outputSize': 'output_size',
    'outputActivation': 'output_activation',
    'weightInit': 'weight_init',
}


class WeightInit(Enum):
    """Weight initialisation strategies."""

    XAVIER = 'xavier'
    HE = 'he'
    LECUN = 'lecun'
    DEFAULT = 'default'

    @classmethod
    def from_name(cls, value: Union[str, 'WeightInit']) -> 'WeightInit':
        """Resolve a strategy from its name (``'small'`` maps to ``DEFAULT``)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            name = value.strip().lower()
            if name == 'small':
                return cls.DEFAULT
            try:
                return cls(name)
            except ValueError:
                pass
        raise ConfigurationError(f"Unknown weight initialisation: {value!r}")

    def scale(self, fan_in: int, fan_out: int) -> float:
        """Standard deviation applied to unit Gaussian noise."""
        if self is WeightInit.XAVIER:
            return math.sqrt(2.0 / (fan_in + fan_out))
        if self is WeightInit.HE:
            return math.sqrt(2.0 / fan_in)
        if self is WeightInit.LECUN:
            return math.sqrt(1.0 / fan_in)
        return DEFAULT_WEIGHT_SCALE


class NetworkState(Enum):
    """Lifecycle of a network instance."""

    UNINITIALIZED = 'uninitialized'
    INITIALIZED = 'initialized'
    TRAINED = 'trained'
    EXPORTED = 'exported'
    RESET = 'reset'


def _is_width(value: Any) -> bool:
    return (isinstance(value, (int, np.integer))
            and not isinstance(value, bool) and value > 0)


@dataclass(frozen=True)
class Architecture:
    """
    Immutable description of a network's shape and activations.

    Accepts enum members or their string names; names are resolved (and
    rejected when unknown) on construction.
    """

    input_size: int = 10
    hidden_layers: Tuple[int, ...] = (64, 32)
    output_size: int = 1
    activation: Activation = Activation.RELU
    output_activation: Activation = Activation.SIGMOID
    weight_init: WeightInit = WeightInit.XAVIER

    def __post_init__(self):
        if isinstance(self.hidden_layers, (str, bytes)) or not isinstance(
                self.hidden_layers, (list, tuple)):
            raise ConfigurationError(
                f"hidden_layers must be a sequence of widths, "
                f"got {self.hidden_layers!r}"
            )
        widths = [self.input_size, *self.hidden_layers, self.output_size]
        for width in widths:
            if not _is_width(width):
                raise ConfigurationError(
                    f"Layer widths must be positive integers, got {widths}"
                )

        object.__setattr__(self, 'input_size', int(self.input_size))
        object.__setattr__(self, 'output_size', int(self.output_size))
        object.__setattr__(
            self, 'hidden_layers', tuple(int(w) for w in self.hidden_layers)
        )
        object.__setattr__(
            self, 'activation', Activation.from_name(self.activation)
        )
        object.__setattr__(
            self, 'output_activation',
            Activation.from_name(self.output_activation)
        )
        object.__setattr__(
            self, 'weight_init', WeightInit.from_name(self.weight_init)
        )

    @property
    def sizes(self) -> List[int]:
        """Layer widths from input to output."""
        return [self.input_size, *self.hidden_layers, self.output_size]

    @classmethod
    def from_sizes(cls, sizes: Sequence[int], **kwargs) -> 'Architecture':
        """Build from a ``[input, h1..hk, output]`` list."""
        if len(sizes) < 2:
            raise ConfigurationError(
                f"Architecture needs at least input and output layers, "
                f"got {list(sizes)}"
            )
        return cls(
            input_size=sizes[0],
            hidden_layers=tuple(sizes[1:-1]),
            output_size=sizes[-1],
            **kwargs
        )

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'Architecture':
        """
        Build from a collaborator configuration dictionary.

        Both the camelCase form (``inputSize``, ``hiddenLayers``,
        ``outputSize``, ``outputActivation``, ``weightInit``) and snake_case
        keys are accepted. Missing keys fall back to the class defaults.

        Raises:
            ConfigurationError: If a key is not an architecture field
        """
        if not isinstance(config, dict):
            raise ConfigurationError(
                f"Architecture config must be a dict, got {type(config).__name__}"
            )
        kwargs = {}
        unknown = []
        for key, value in config.items():
            name = ARCHITECTURE_ALIASES.get(key, key)
            if name in cls.__dataclass_fields__:
                kwargs[name] = value
            else:
                unknown.append(key)
        if unknown:
            raise ConfigurationError(
                f"Unknown architecture keys: {', '.join(sorted(map(str, unknown)))}"
            )
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the camelCase collaborator form."""
        return {
            'inputSize': self.input_size,
            'hiddenLayers': list(self.hidden_layers),
            'outputSize': self.output_size,
            'activation': self.activation.value,
            'outputActivation': self.output_activation.value,
            'weightInit': self.weight_init.value,
        }


@dataclass(frozen=True, eq=False)
class ActivationCache:
    """Per-layer values recorded by one training forward pass."""

    input: np.ndarray
    pre_activations: Tuple[np.ndarray, ...] = field(default_factory=tuple)
    activations: Tuple[np.ndarray, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.pre_activations)

    @property
    def output(self) -> np.ndarray:
        return self.activations[-1]


class Network:
    """
    Fully connected feed-forward network.

    Example:
        >>> net = Network(Architecture.from_sizes([2, 4, 1]), seed=7)
        >>> net.predict([0.0, 1.0]).shape
        (1,)
    """

    def __init__(
        self,
        architecture: Union[Architecture, Dict[str, Any], Sequence[int]],
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Build and initialise a network.

        Args:
            architecture: An ``Architecture``, a config dict, or a list of
                layer widths
            seed: Seed for a fresh random generator
            rng: Generator to draw initial weights from (overrides ``seed``)

        Raises:
            ConfigurationError: If the architecture is invalid
        """
        self.state = NetworkState.UNINITIALIZED
        if isinstance(architecture, Architecture):
            self.architecture = architecture
        elif isinstance(architecture, dict):
            self.architecture = Architecture.from_dict(architecture)
        elif isinstance(architecture, (list, tuple)):
            self.architecture = Architecture.from_sizes(architecture)
        else:
            raise ConfigurationError(
                f"Unsupported architecture description: {architecture!r}"
            )

        self.sizes = self.architecture.sizes
        self._rng = rng if rng is not None else np.random.default_rng(seed)
        self.weights: List[np.ndarray] = []
        self.biases: List[np.ndarray] = []
        self.optimizer_state = OptimizerState([])
        self._pending: Optional[Gradients] = None
        self._initialize()

    @property
    def num_layers(self) -> int:
        """Number of weight layers (layer boundaries)."""
        return len(self.sizes) - 1

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def _gaussian(self, shape: Tuple[int, int]) -> np.ndarray:
        # Box-Muller transform; 1 - U keeps the log argument in (0, 1]
        u = 1.0 - self._rng.random(shape)
        v = self._rng.random(shape)
        return np.sqrt(-2.0 * np.log(u)) * np.cos(2.0 * np.pi * v)

    def _initialize(self) -> None:
        init = self.architecture.weight_init
        self.weights = []
        self.biases = []
        for fan_in, fan_out in zip(self.sizes[:-1], self.sizes[1:]):
            scale = init.scale(fan_in, fan_out)
            self.weights.append(self._gaussian((fan_in, fan_out)) * scale)
            self.biases.append(np.full(fan_out, INITIAL_BIAS))

        self.optimizer_state = OptimizerState(
            [(w.shape, b.shape) for w, b in zip(self.weights, self.biases)]
        )
        self._pending = None
        self.state = NetworkState.INITIALIZED

        logger.info(
            f"Neural network initialized with architecture: "
            f"{' -> '.join(str(s) for s in self.sizes)}"
        )

    def reset(self) -> None:
        """Re-draw all parameters and drop optimizer state."""
        self._initialize()
        self.state = NetworkState.RESET

    def mark_exported(self) -> bool:
        """
        Record that the current parameters have been exported.

        Only a trained network moves to ``EXPORTED``; any other state is left
        as it is.

        Returns:
            bool: True if the network is now in the ``EXPORTED`` state
        """
        if self.state not in (NetworkState.TRAINED, NetworkState.EXPORTED):
            logger.debug(f"Network in state '{self.state.value}' not marked as exported")
            return False
        self.state = NetworkState.EXPORTED
        return True

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    def _as_vector(self, values: Any, width: int, what: str) -> np.ndarray:
        vector = np.asarray(values, dtype=np.float64)
        if vector.ndim != 1 or vector.shape[0] != width:
            raise ShapeMismatchError(
                f"{what} must be a vector of length {width}, "
                f"got shape {vector.shape}"
            )
        return vector

    def _layer_activation(self, index: int) -> Activation:
        if index == self.num_layers - 1:
            return self.architecture.output_activation
        return self.architecture.activation

    def forward_for_inference(self, x: Any) -> np.ndarray:
        """
        Compute the network output without recording anything.

        Raises:
            ShapeMismatchError: If ``len(x)`` differs from the input width
        """
        activation = self._as_vector(x, self.sizes[0], 'Input')
        for i, (w, b) in enumerate(zip(self.weights, self.biases)):
            activation = self._layer_activation(i).apply(activation @ w + b)
        return activation

    predict = forward_for_inference

    def forward_for_training(self, x: Any) -> Tuple[np.ndarray, ActivationCache]:
        """
        Compute the output and the cache needed by ``backward``.

        Returns:
            tuple: ``(output, cache)``
        """
        x = self._as_vector(x, self.sizes[0], 'Input')
        pre_activations = []
        activations = []
        activation = x
        for i, (w, b) in enumerate(zip(self.weights, self.biases)):
            z = activation @ w + b
            activation = self._layer_activation(i).apply(z)
            pre_activations.append(z)
            activations.append(activation)
        cache = ActivationCache(
            input=x,
            pre_activations=tuple(pre_activations),
            activations=tuple(activations)
        )
        return activation, cache

    # ------------------------------------------------------------------
    # Backward pass and updates
    # ------------------------------------------------------------------

    def backward(
        self,
        input_vector: Any,
        target: Any,
        output: Any,
        loss: Union[str, Loss] = Loss.MSE,
        cache: Optional[ActivationCache] = None
    ) -> Gradients:
        """
        Backpropagate one sample and store the gradients for the next update.

        Args:
            input_vector: The sample passed to ``forward_for_training``
            target: Expected output
            output: Output returned by ``forward_for_training``
            loss: Loss whose gradient seeds the output error
            cache: Cache returned by the same ``forward_for_training`` call

        Returns:
            list: ``(dW, db)`` per layer, in forward order

        Raises:
            StaleCacheError: If ``cache`` is missing or was produced for a
                different input, output or architecture
            ShapeMismatchError: If ``target`` has the wrong length
        """
        loss = Loss.from_name(loss)
        if cache is None:
            raise StaleCacheError(
                "backward() requires the cache from forward_for_training()"
            )
        x = self._as_vector(input_vector, self.sizes[0], 'Input')
        target = self._as_vector(target, self.sizes[-1], 'Target')
        output = self._as_vector(output, self.sizes[-1], 'Output')
        if len(cache) != self.num_layers:
            raise StaleCacheError(
                f"Cache holds {len(cache)} layers, network has {self.num_layers}"
            )
        if not np.array_equal(cache.input, x) or not np.array_equal(cache.output, output):
            raise StaleCacheError(
                "Cache does not belong to this input/output pair"
            )

        delta = loss.gradient(output, target)
        gradients: Gradients = [None] * self.num_layers  # type: ignore
        for i in reversed(range(self.num_layers)):
            layer_input = cache.input if i == 0 else cache.activations[i - 1]
            gradients[i] = (np.outer(layer_input, delta), delta.copy())
            if i > 0:
                derivative = self.architecture.activation.derivative(
                    cache.pre_activations[i - 1]
                )
                delta = (self.weights[i] @ delta) * derivative

        self._pending = gradients
        return gradients

    def update_weights(
        self,
        learning_rate: float,
        optimizer: Union[str, Optimizer] = Optimizer.SGD,
        momentum: float = 0.9,
        gradients: Optional[Gradients] = None
    ) -> None:
        """
        Apply gradients with the chosen optimizer.

        Uses the gradients from the latest ``backward`` call unless
        ``gradients`` is given.

        Raises:
            StaleCacheError: If there are no gradients to apply
            NumericalInstabilityError: If a parameter becomes NaN or infinite;
                the weights, biases and optimizer state are left unchanged
        """
        optimizer = Optimizer.from_name(optimizer)
        grads = gradients if gradients is not None else self._pending
        if grads is None:
            raise StaleCacheError("update_weights() called with no pending gradients")

        weights = [w.copy() for w in self.weights]
        biases = [b.copy() for b in self.biases]
        optimizer_state = copy.deepcopy(self.optimizer_state)

        apply_update(
            optimizer,
            self.weights,
            self.biases,
            grads,
            self.optimizer_state,
            learning_rate,
            momentum
        )
        self._pending = None

        for i, (w, b) in enumerate(zip(self.weights, self.biases)):
            if not (np.all(np.isfinite(w)) and np.all(np.isfinite(b))):
                # Leave the parameters as they were before this update
                self.weights = weights
                self.biases = biases
                self.optimizer_state = optimizer_state
                raise NumericalInstabilityError(
                    f"Non-finite parameters in layer {i} after {optimizer.value} update"
                )

    def train_batch(
        self,
        inputs: Sequence[Any],
        targets: Sequence[Any],
        learning_rate: float = 0.01,
        optimizer: Union[str, Optimizer] = Optimizer.ADAM,
        loss: Union[str, Loss] = Loss.MSE,
        momentum: float = 0.9,
        averaged: bool = False
    ) -> float:
        """
        Train on one batch and return its mean loss.

        By default weights are updated after every sample (online descent).
        With ``averaged=True`` gradients are accumulated across the batch
        and applied once as their mean.

        Raises:
            InsufficientDataError: If the batch is empty or the input and
                target counts differ
            NumericalInstabilityError: If a loss or parameter is non-finite
        """
        if len(inputs) == 0:
            raise InsufficientDataError("Cannot train on an empty batch")
        if len(inputs) != len(targets):
            raise InsufficientDataError(
                f"Got {len(inputs)} inputs but {len(targets)} targets"
            )
        loss = Loss.from_name(loss)
        optimizer = Optimizer.from_name(optimizer)

        total_loss = 0.0
        accumulated: Optional[Gradients] = None
        for x, t in zip(inputs, targets):
            output, cache = self.forward_for_training(x)
            target = self._as_vector(t, self.sizes[-1], 'Target')
            sample_loss = loss.value_of(output, target)
            if not math.isfinite(sample_loss):
                raise NumericalInstabilityError(
                    f"Non-finite {loss.value} loss: {sample_loss}"
                )
            total_loss += sample_loss

            gradients = self.backward(cache.input, target, output, loss, cache)
            if not averaged:
                self.update_weights(learning_rate, optimizer, momentum)
            elif accumulated is None:
                accumulated = [[gw.copy(), gb.copy()] for gw, gb in gradients]
            else:
                for acc, (gw, gb) in zip(accumulated, gradients):
                    acc[0] += gw
                    acc[1] += gb

        if averaged:
            count = float(len(inputs))
            mean = [(gw / count, gb / count) for gw, gb in accumulated]
            self.update_weights(learning_rate, optimizer, momentum, gradients=mean)

        self.state = NetworkState.TRAINED
        return total_loss / len(inputs)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _is_correct(self, output: np.ndarray, target: np.ndarray) -> bool:
        if output.shape[0] == 1:
            return bool((output[0] >= 0.5) == (target[0] >= 0.5))
        return int(np.argmax(output)) == int(np.argmax(target))

    def evaluate(
        self,
        inputs: Sequence[Any],
        targets: Sequence[Any],
        metric: Optional[str] = 'accuracy',
        loss: Union[str, Loss] = Loss.MSE
    ) -> Dict[str, float]:
        """
        Mean loss and accuracy over a dataset.

        Accuracy thresholds single-output networks at 0.5 and compares the
        argmax of output and target otherwise. It is reported as 0.0 when
        ``metric`` is not ``'accuracy'``.

        Returns:
            dict: ``{'loss': float, 'accuracy': float}``
        """
        if len(inputs) == 0:
            raise InsufficientDataError("Cannot evaluate on an empty dataset")
        if len(inputs) != len(targets):
            raise InsufficientDataError(
                f"Got {len(inputs)} inputs but {len(targets)} targets"
            )
        loss = Loss.from_name(loss)

        total_loss = 0.0
        correct = 0
        for x, t in zip(inputs, targets):
            output = self.forward_for_inference(x)
            target = self._as_vector(t, self.sizes[-1], 'Target')
            total_loss += loss.value_of(output, target)
            if metric == 'accuracy' and self._is_correct(output, target):
                correct += 1

        return {
            'loss': total_loss / len(inputs),
            'accuracy': correct / len(inputs)
        }

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def save_weights(self) -> Dict[str, Any]:
        """
        Deep copy of the parameters bound to the architecture descriptor.

        Returns:
            dict: ``{'weights', 'biases', 'architecture'}`` with nested lists
            of floats
        """
        return {
            'weights': [w.tolist() for w in self.weights],
            'biases': [b.tolist() for b in self.biases],
            'architecture': self.architecture.to_dict()
        }

    def load_weights(self, bundle: Dict[str, Any]) -> None:
        """
        Replace the parameters with copies of those in ``bundle``.

        Raises:
            ShapeMismatchError: If the layer count or any tensor shape differs
        """
        try:
            weights = bundle['weights']
            biases = bundle['biases']
        except (KeyError, TypeError) as e:
            raise ShapeMismatchError(f"Weight bundle is missing {e}") from e

        if len(weights) != self.num_layers or len(biases) != self.num_layers:
            raise ShapeMismatchError(
                f"Bundle has {len(weights)} weight and {len(biases)} bias "
                f"tensors, network has {self.num_layers} layers"
            )

        new_weights = []
        new_biases = []
        for i in range(self.num_layers):
            w = np.array(weights[i], dtype=np.float64)
            b = np.array(biases[i], dtype=np.float64)
            if w.shape != self.weights[i].shape or b.shape != self.biases[i].shape:
                raise ShapeMismatchError(
                    f"Layer {i}: expected weights {self.weights[i].shape} and "
                    f"biases {self.biases[i].shape}, got {w.shape} and {b.shape}"
                )
            new_weights.append(w)
            new_biases.append(b)

        self.weights = new_weights
        self.biases = new_biases
        self._pending = None

    def summary(self) -> Dict[str, Any]:
        """Architecture and parameter count."""
        total = sum(w.size + b.size for w, b in zip(self.weights, self.biases))
        return {
            'architecture': list(self.sizes),
            'total_layers': self.num_layers,
            'total_parameters': int(total),
            'activation': self.architecture.activation.value,
            'output_activation': self.architecture.output_activation.value,
            'weight_init': self.architecture.weight_init.value,
            'state': self.state.value
        }

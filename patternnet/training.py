"""
training.py
~~~~~~~~~~~

Epoch loop driving a single ``Network``.

The harness splits the data into training and validation sets, shuffles
the training indices every epoch, feeds fixed-size mini-batches to
``Network.train_batch``, and keeps a snapshot of the weights with the lowest
validation loss seen so far. Training stops early once validation loss has
not improved for ``early_stopping_patience`` consecutive epochs, and the
best snapshot is restored before the final evaluation.

Failures inside the loop never propagate: the harness returns
``{'success': False, 'error': ..., 'partial_history': ...}`` instead.
"""

import copy
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from patternnet.exceptions import ConfigurationError, InsufficientDataError
from patternnet.losses import Loss
from patternnet.network import Network
from patternnet.optimizers import Optimizer

logger = logging.getLogger(__name__)

EpochCallback = Callable[[Dict[str, Any]], None]

_OPTION_ALIASES = {
    'batchSize': 'batch_size',
    'learningRate': 'learning_rate',
    'validationSplit': 'validation_split',
    'earlyStoppingPatience': 'early_stopping_patience',
    'lossType': 'loss',
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class TrainingOptions:
    """Hyperparameters for one training session."""

    epochs: int = 100
    batch_size: int = 32
    learning_rate: float = 0.001
    validation_split: float = 0.2
    early_stopping_patience: int = 10
    optimizer: Union[str, Optimizer] = Optimizer.ADAM
    loss: Union[str, Loss] = Loss.MSE
    momentum: float = 0.9
    averaged: bool = False
    seed: Optional[int] = None

    def __post_init__(self):
        self.optimizer = Optimizer.from_name(self.optimizer)
        self.loss = Loss.from_name(self.loss)

        for name in ('epochs', 'batch_size', 'early_stopping_patience'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if (not _is_number(self.learning_rate) or not math.isfinite(self.learning_rate)
                or self.learning_rate < 0):
            raise ConfigurationError(
                f"learning_rate must be a finite non-negative number, got {self.learning_rate!r}"
            )
        if not isinstance(self.validation_split, (int, float)) or not 0 <= self.validation_split < 1:
            raise ConfigurationError(
                f"validation_split must be in [0, 1), got {self.validation_split!r}"
            )
        if not isinstance(self.momentum, (int, float)) or not 0 <= self.momentum < 1:
            raise ConfigurationError(f"momentum must be in [0, 1), got {self.momentum!r}")

    @classmethod
    def from_dict(cls, options: Optional[Dict[str, Any]] = None, **defaults) -> 'TrainingOptions':
        """
        Build options from a request dictionary.

        camelCase keys (``batchSize``, ``learningRate``, ...) are accepted
        alongside snake_case. Unknown keys are ignored. ``defaults`` apply
        when the dictionary does not set a value.
        """
        kwargs = dict(defaults)
        for key, value in (options or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name in cls.__dataclass_fields__:
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'epochs': self.epochs,
            'batch_size': self.batch_size,
            'learning_rate': self.learning_rate,
            'validation_split': self.validation_split,
            'early_stopping_patience': self.early_stopping_patience,
            'optimizer': self.optimizer.value,
            'loss': self.loss.value,
            'momentum': self.momentum,
            'averaged': self.averaged,
            'seed': self.seed,
        }


def _empty_history() -> Dict[str, List[float]]:
    return {'loss': [], 'accuracy': [], 'val_loss': [], 'val_accuracy': []}


@dataclass
class TrainingRun:
    """State of one training session."""

    history: Dict[str, List[float]] = field(default_factory=_empty_history)
    best_weights: Optional[Dict[str, Any]] = None
    best_val_loss: float = math.inf
    best_epoch: int = -1
    epochs_completed: int = 0
    stopped_early: bool = False
    cancelled: bool = False

    @property
    def converged(self) -> bool:
        """True when early stopping detected a validation plateau."""
        return self.stopped_early

    def record(self, train: Dict[str, float], validation: Dict[str, float]) -> None:
        self.history['loss'].append(train['loss'])
        self.history['accuracy'].append(train['accuracy'])
        self.history['val_loss'].append(validation['loss'])
        self.history['val_accuracy'].append(validation['accuracy'])
        self.epochs_completed += 1

    def history_copy(self) -> Dict[str, List[float]]:
        return {key: list(values) for key, values in self.history.items()}


class TrainingHarness:
    """
    Runs the epoch loop for one network.

    Args:
        network: Network to train in place
        options: Hyperparameters (defaults to ``TrainingOptions()``)
        on_epoch: Called after every epoch with ``epoch``, ``total_epochs``,
            ``loss``, ``accuracy``, ``val_loss`` and ``val_accuracy``
        should_stop: Checked before every epoch; returning True cancels the
            run cooperatively
        yield_func: Called between epochs so a cooperative scheduler can
            serve other work
    """

    def __init__(
        self,
        network: Network,
        options: Optional[TrainingOptions] = None,
        on_epoch: Optional[EpochCallback] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ):
        self.network = network
        self.options = options or TrainingOptions()
        self.on_epoch = on_epoch
        self.should_stop = should_stop
        self.yield_func = yield_func
        self.last_run: Optional[TrainingRun] = None
        self._rng = np.random.default_rng(self.options.seed)

    def split(
        self,
        inputs: Sequence[Any],
        targets: Sequence[Any]
    ) -> Tuple[List[Any], List[Any], List[Any], List[Any]]:
        """
        Shuffle indices and split into training and validation sets.

        When the validation share rounds down to nothing, the training set
        doubles as the validation set.

        Returns:
            tuple: ``(train_inputs, train_targets, val_inputs, val_targets)``
        """
        if len(inputs) == 0:
            raise InsufficientDataError("Training data is empty")
        if len(inputs) != len(targets):
            raise InsufficientDataError(
                f"Got {len(inputs)} inputs but {len(targets)} targets"
            )

        split_index = int(math.floor(len(inputs) * (1 - self.options.validation_split)))
        if split_index < 1:
            raise InsufficientDataError(
                f"{len(inputs)} sample(s) leave nothing to train on with "
                f"validation_split={self.options.validation_split}"
            )

        order = self._rng.permutation(len(inputs))
        train_idx, val_idx = order[:split_index], order[split_index:]
        train_x = [inputs[i] for i in train_idx]
        train_y = [targets[i] for i in train_idx]
        if len(val_idx) == 0:
            logger.debug("Validation split is empty; validating on training data")
            return train_x, train_y, train_x, train_y
        return (train_x, train_y,
                [inputs[i] for i in val_idx], [targets[i] for i in val_idx])

    def _train_epoch(
        self,
        inputs: List[Any],
        targets: List[Any],
        classification: bool
    ) -> Dict[str, float]:
        opts = self.options
        order = self._rng.permutation(len(inputs))
        total_loss = 0.0
        correct = 0.0

        for start in range(0, len(order), opts.batch_size):
            batch_idx = order[start:start + opts.batch_size]
            batch_x = [inputs[i] for i in batch_idx]
            batch_y = [targets[i] for i in batch_idx]

            batch_loss = self.network.train_batch(
                batch_x,
                batch_y,
                learning_rate=opts.learning_rate,
                optimizer=opts.optimizer,
                loss=opts.loss,
                momentum=opts.momentum,
                averaged=opts.averaged
            )
            total_loss += batch_loss * len(batch_x)

            if classification:
                batch_metrics = self.network.evaluate(batch_x, batch_y, loss=opts.loss)
                correct += batch_metrics['accuracy'] * len(batch_x)

        return {
            'loss': total_loss / len(inputs),
            'accuracy': correct / len(inputs) if classification else 0.0
        }

    def run(
        self,
        inputs: Sequence[Any],
        targets: Sequence[Any],
        classification: bool = False
    ) -> Dict[str, Any]:
        """
        Train the network and return the outcome.

        Args:
            inputs: Preprocessed input vectors
            targets: Target vectors aligned with ``inputs``
            classification: Whether to track training accuracy

        Returns:
            dict: On success ``success``, ``metrics``, ``history``,
            ``epochs_completed``, ``best_epoch``, ``stopped_early``,
            ``cancelled`` and ``converged``. On failure ``success``,
            ``error``, ``error_type`` and ``partial_history``.
        """
        opts = self.options
        run = TrainingRun()
        self.last_run = run
        patience = 0

        try:
            train_x, train_y, val_x, val_y = self.split(inputs, targets)
            logger.info(
                f"Training {self.network.sizes} on {len(train_x)} samples "
                f"({len(val_x)} validation) for up to {opts.epochs} epochs "
                f"with {opts.optimizer.value}, lr={opts.learning_rate}"
            )

            for epoch in range(opts.epochs):
                if self.should_stop is not None and self.should_stop():
                    logger.info(f"Training cancelled before epoch {epoch}")
                    run.cancelled = True
                    break

                train_metrics = self._train_epoch(train_x, train_y, classification)
                val_metrics = self.network.evaluate(val_x, val_y, loss=opts.loss)
                run.record(train_metrics, val_metrics)

                if val_metrics['loss'] < run.best_val_loss:
                    run.best_val_loss = val_metrics['loss']
                    run.best_epoch = epoch
                    run.best_weights = self.network.save_weights()
                    patience = 0
                else:
                    patience += 1

                if self.on_epoch is not None:
                    self.on_epoch({
                        'epoch': epoch + 1,
                        'total_epochs': opts.epochs,
                        'loss': train_metrics['loss'],
                        'accuracy': train_metrics['accuracy'],
                        'val_loss': val_metrics['loss'],
                        'val_accuracy': val_metrics['accuracy'],
                    })

                if epoch % 10 == 0:
                    logger.info(
                        f"Epoch {epoch}: loss={train_metrics['loss']:.4f}, "
                        f"val_loss={val_metrics['loss']:.4f}"
                    )
                else:
                    logger.debug(
                        f"Epoch {epoch}: loss={train_metrics['loss']:.4f}, "
                        f"val_loss={val_metrics['loss']:.4f}"
                    )

                if patience >= opts.early_stopping_patience:
                    logger.info(f"Early stopping at epoch {epoch}")
                    run.stopped_early = True
                    break

                if self.yield_func is not None:
                    self.yield_func()

            if run.best_weights is not None:
                self.network.load_weights(copy.deepcopy(run.best_weights))

            final_metrics = self.network.evaluate(val_x, val_y, loss=opts.loss)

        except Exception as e:
            logger.exception(f"Training aborted after {run.epochs_completed} epoch(s): {e}")
            return {
                'success': False,
                'error': str(e),
                'error_type': type(e).__name__,
                'partial_history': run.history_copy()
            }

        return {
            'success': True,
            'metrics': final_metrics,
            'history': run.history_copy(),
            'epochs_completed': run.epochs_completed,
            'best_epoch': run.best_epoch,
            'stopped_early': run.stopped_early,
            'cancelled': run.cancelled,
            'converged': run.converged
        }

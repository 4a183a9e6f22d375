"""
registry.py
~~~~~~~~~~~

Catalogue of named model configurations and the networks trained for them.

A ``ModelRegistry`` is constructed explicitly by the application and passed
to whatever needs it; there is no module-level instance. Each entry binds a
task configuration (architecture, preprocessing, use-cases) to at most one
trained ``Network`` together with its fitted ``Preprocessor``.

Training and prediction failures caused by the data are reported as
``{'success': False, 'error': ...}``. Calling into a model that does not
exist or has not been trained raises.

Events are delivered to listeners registered with ``subscribe``:
- ``training-progress``: per-epoch ``loss``, ``accuracy``, ``val_loss``,
  ``val_accuracy``
- ``training-completed``: final metrics
- ``training-failed``: the error message
"""

import copy
import logging
import math
import numbers
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from patternnet.exceptions import (
    ConfigurationError,
    InsufficientDataError,
    ModelNotFoundError,
    ModelNotTrainedError,
    PatternNetError
)
from patternnet.losses import Loss
from patternnet.network import ARCHITECTURE_ALIASES, Architecture, Network
from patternnet.preprocessing import Preprocessing, Preprocessor
from patternnet.tasks import (
    TaskType,
    anomaly_severity,
    assign_cluster,
    cluster_stats,
    confidence,
    one_hot,
    postprocess,
    principal_component_targets,
    ranked,
    reconstruction_error
)
from patternnet.training import TrainingHarness, TrainingOptions

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]

DEFAULT_MODELS: Dict[str, Dict[str, Any]] = {
    'timeseries': {
        'name': 'Time Series Predictor',
        'type': 'regression',
        'architecture': {
            'inputSize': 10,
            'hiddenLayers': [64, 32, 16],
            'outputSize': 1,
            'activation': 'relu',
            'outputActivation': 'linear'
        },
        'preprocessing': 'normalize',
        'useCases': ['Performance metrics', 'Resource usage', 'Traffic patterns']
    },
    'anomaly': {
        'name': 'Anomaly Detector',
        'type': 'autoencoder',
        'architecture': {
            'inputSize': 20,
            'hiddenLayers': [16, 8, 4, 8, 16],
            'outputSize': 20,
            'activation': 'relu',
            'outputActivation': 'sigmoid'
        },
        'preprocessing': 'standardize',
        'useCases': ['Security threats', 'System failures', 'Data corruption']
    },
    'classifier': {
        'name': 'Multi-class Classifier',
        'type': 'classification',
        'architecture': {
            'inputSize': 50,
            'hiddenLayers': [128, 64, 32],
            'outputSize': 10,
            'activation': 'relu',
            'outputActivation': 'softmax'
        },
        'preprocessing': 'normalize',
        'useCases': ['Error categorization', 'User behavior', 'Request types']
    },
    'clustering': {
        'name': 'Neural Clustering',
        'type': 'clustering',
        'architecture': {
            'inputSize': 30,
            'hiddenLayers': [20, 10, 5],
            'outputSize': 3,
            'activation': 'tanh',
            'outputActivation': 'linear'
        },
        'preprocessing': 'standardize',
        'useCases': ['User segmentation', 'Pattern grouping', 'Resource allocation']
    },
    'regression': {
        'name': 'Performance Regressor',
        'type': 'regression',
        'architecture': {
            'inputSize': 15,
            'hiddenLayers': [32, 16],
            'outputSize': 1,
            'activation': 'leaky_relu',
            'outputActivation': 'linear'
        },
        'preprocessing': 'standardize',
        'useCases': ['Performance prediction', 'Cost estimation', 'Load forecasting']
    },
    'sequence': {
        'name': 'Sequence Analyzer',
        'type': 'sequence',
        'architecture': {
            'inputSize': 100,
            'hiddenLayers': [128, 64],
            'outputSize': 100,
            'activation': 'relu',
            'outputActivation': 'softmax'
        },
        'preprocessing': 'tokenize',
        'useCases': ['Command prediction', 'Log analysis', 'Pattern completion']
    },
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ModelEntry:
    """A registered model and, once trained, its network."""

    id: str
    name: str
    task_type: TaskType
    architecture: Architecture
    preprocessing: Preprocessing
    use_cases: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    trained: bool = False
    network: Optional[Network] = None
    preprocessor: Optional[Preprocessor] = None
    scale_targets: bool = False
    train_options: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, float]] = None
    history: Optional[Dict[str, List[float]]] = None
    trained_at: Optional[str] = None

    @classmethod
    def from_config(cls, model_id: str, config: Dict[str, Any]) -> 'ModelEntry':
        """
        Build an untrained entry from a registration config.

        The architecture may be nested under ``architecture`` or given as
        top-level ``inputSize``/``hiddenLayers``/... keys.
        """
        if not isinstance(config, dict):
            raise ConfigurationError(f"Config for '{model_id}' must be a dict")
        if 'architecture' in config:
            architecture = Architecture.from_dict(config['architecture'])
        else:
            architecture = Architecture.from_dict({
                key: value for key, value in config.items()
                if ARCHITECTURE_ALIASES.get(key, key) in Architecture.__dataclass_fields__
            })
        return cls(
            id=model_id,
            name=config.get('name', model_id),
            task_type=TaskType.from_name(config.get('type', 'regression')),
            architecture=architecture,
            preprocessing=Preprocessing.from_name(config.get('preprocessing')),
            use_cases=list(config.get('useCases', config.get('use_cases', []))),
        )

    def config_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': self.task_type.value,
            'architecture': self.architecture.to_dict(),
            'preprocessing': self.preprocessing.value,
            'useCases': list(self.use_cases),
        }

    def info(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            **self.config_dict(),
            'trained': self.trained,
            'created_at': self.created_at,
            'last_trained': self.trained_at,
            'metrics': copy.deepcopy(self.metrics),
            'train_options': copy.deepcopy(self.train_options),
            'summary': self.network.summary() if self.network is not None else None,
        }


def _split_records(data: Any) -> Tuple[List[Any], Optional[List[Any]]]:
    """Accept ``{inputs, targets}``, ``[{input, target}, ...]`` or a bare list."""
    if isinstance(data, dict):
        if 'inputs' not in data:
            raise InsufficientDataError("Training data needs an 'inputs' field")
        targets = data.get('targets')
        return list(data['inputs']), (list(targets) if targets is not None else None)

    rows = list(data)
    if rows and all(isinstance(row, dict) for row in rows):
        try:
            inputs = [row['input'] for row in rows]
        except KeyError as e:
            raise InsufficientDataError("Every training record needs an 'input' field") from e
        targets = [row.get('target') for row in rows]
        if all(t is None for t in targets):
            return inputs, None
        return inputs, targets
    return rows, None


def _is_scalar(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


class ModelRegistry:
    """
    Named model configurations bound to trained networks.

    Args:
        with_defaults: Pre-register the built-in task configurations
        seed: Seed used for network initialisation and shuffling when the
            training options do not set one
    """

    def __init__(self, with_defaults: bool = True, seed: Optional[int] = None):
        self.seed = seed
        self._lock = threading.RLock()
        self._entries: Dict[str, ModelEntry] = {}
        self._listeners: List[Listener] = []

        if with_defaults:
            for model_id, config in DEFAULT_MODELS.items():
                self.register_model(model_id, config)
            logger.info(f"Initialized {len(self._entries)} pattern recognition models")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        """Register ``listener(event_name, payload)`` for training events."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, payload)
            except Exception as e:
                logger.exception(f"Listener failed handling '{event}': {e}")

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def register_model(self, model_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register (or replace) a model configuration.

        Raises:
            ConfigurationError: If the id or config is invalid
        """
        if not model_id or not isinstance(model_id, str):
            raise ConfigurationError("model_id must be a non-empty string")
        entry = ModelEntry.from_config(model_id, config)
        with self._lock:
            self._entries[model_id] = entry
        logger.debug(f"Registered model '{model_id}' ({entry.task_type.value})")
        return entry.info()

    def _entry(self, model_id: str) -> ModelEntry:
        with self._lock:
            entry = self._entries.get(model_id)
        if entry is None:
            raise ModelNotFoundError(f"Model '{model_id}' not found")
        return entry

    def _trained_entry(self, model_id: str) -> ModelEntry:
        entry = self._entry(model_id)
        if not entry.trained or entry.network is None:
            raise ModelNotTrainedError(f"Model '{model_id}' not trained or loaded")
        return entry

    def is_trained(self, model_id: str) -> bool:
        return self._entry(model_id).trained

    def get_model_info(self, model_id: str) -> Optional[Dict[str, Any]]:
        """Metadata for one model, or None when it is not registered."""
        with self._lock:
            entry = self._entries.get(model_id)
        if entry is None:
            logger.warning(f"Model info requested for unknown model '{model_id}'")
            return None
        return entry.info()

    def list_models(self) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._entries.values())
        return [
            {
                'id': entry.id,
                'name': entry.name,
                'type': entry.task_type.value,
                'trained': entry.trained,
                'useCases': list(entry.use_cases),
                'metrics': copy.deepcopy(entry.metrics),
            }
            for entry in entries
        ]

    def delete_model(self, model_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(model_id, None)
        if removed is None:
            logger.warning(f"Could not delete model '{model_id}': not found")
            return False
        logger.info(f"Deleted model '{model_id}'")
        return True

    def history(self, model_id: str) -> Optional[Dict[str, List[float]]]:
        return copy.deepcopy(self._entry(model_id).history)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _prepare(
        self,
        entry: ModelEntry,
        data: Any
    ) -> Tuple[List[np.ndarray], List[np.ndarray], Preprocessor, bool]:
        """Fit preprocessing and produce model-ready inputs and targets."""
        arch = entry.architecture
        inputs, targets = _split_records(data)
        if len(inputs) == 0:
            raise InsufficientDataError(f"No training data for '{entry.id}'")

        preprocessor = Preprocessor(
            method=entry.preprocessing,
            width=arch.input_size if entry.preprocessing is Preprocessing.TOKENIZE else None
        )
        scale_targets = False

        if entry.task_type is TaskType.SEQUENCE:
            if targets is None:
                # Every prefix of a sequence predicts the token that follows it
                contexts, next_tokens = [], []
                for sequence in inputs:
                    sequence = list(sequence)
                    for k in range(1, len(sequence)):
                        contexts.append(sequence[:k])
                        next_tokens.append(sequence[k])
                if not contexts:
                    raise InsufficientDataError(
                        "Sequences need at least two tokens to derive next-token targets"
                    )
                inputs, targets = contexts, next_tokens
            if entry.preprocessing is Preprocessing.TOKENIZE:
                preprocessor.fit(inputs)
                preprocessor.extend_vocabulary(targets)
                encoded = [preprocessor.token_index(t) for t in targets]
            else:
                preprocessor.fit(inputs)
                encoded = [int(t) for t in targets]
            target_vectors = [
                one_hot(index if index < arch.output_size else 0, arch.output_size)
                for index in encoded
            ]
            return preprocessor.transform_many(inputs), target_vectors, preprocessor, False

        if targets is None and entry.task_type is TaskType.REGRESSION and all(
                _is_scalar(v) for v in inputs):
            # A flat series: sliding windows predict the next point
            width = arch.input_size
            if len(inputs) <= width:
                raise InsufficientDataError(
                    f"A series of {len(inputs)} points is too short for "
                    f"windows of {width}"
                )
            series = list(inputs)
            inputs = [series[i:i + width] for i in range(len(series) - width)]
            targets = [[series[i + width]] for i in range(len(series) - width)]
            scale_targets = entry.preprocessing in (Preprocessing.NORMALIZE,
                                                    Preprocessing.STANDARDIZE)

        preprocessor.fit(inputs)
        processed = preprocessor.transform_many(inputs)

        if targets is None:
            if entry.task_type is TaskType.AUTOENCODER:
                target_vectors = [p.copy() for p in processed]
            elif entry.task_type is TaskType.CLUSTERING:
                target_vectors = principal_component_targets(processed, arch.output_size)
            else:
                raise InsufficientDataError(
                    f"Training data for '{entry.id}' ({entry.task_type.value}) needs targets"
                )
        elif entry.task_type is TaskType.CLASSIFICATION and all(_is_scalar(t) for t in targets):
            target_vectors = [one_hot(int(t), arch.output_size) for t in targets]
        elif scale_targets:
            target_vectors = [preprocessor.transform(t) for t in targets]
        else:
            target_vectors = [np.asarray(t, dtype=np.float64) for t in targets]

        return processed, target_vectors, preprocessor, scale_targets

    def train_model(
        self,
        model_id: str,
        data: Any,
        options: Optional[Dict[str, Any]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> Dict[str, Any]:
        """
        Train a fresh network for ``model_id``.

        Args:
            model_id: Registered model id
            data: ``{'inputs', 'targets'}``, ``[{'input', 'target'}, ...]``,
                a list of inputs (autoencoder, clustering, sequence), or a
                flat numeric series (regression)
            options: Training options; see ``TrainingOptions``
            should_stop: Cooperative cancellation check, run before each epoch
            yield_func: Called between epochs

        Returns:
            dict: ``{'model_id', 'success', 'metrics', 'history', ...}`` or
            ``{'model_id', 'success': False, 'error', 'partial_history'}``

        Raises:
            ModelNotFoundError: If ``model_id`` is not registered
            ConfigurationError: If ``options`` are invalid
        """
        entry = self._entry(model_id)
        defaults = {}
        if self.seed is not None:
            defaults['seed'] = self.seed
        if entry.task_type in (TaskType.CLASSIFICATION, TaskType.SEQUENCE):
            defaults['loss'] = Loss.CROSS_ENTROPY
        train_options = TrainingOptions.from_dict(options, **defaults)

        logger.info(f"Training {entry.name} model")
        self._emit('training-started', {
            'model_id': model_id,
            'options': train_options.to_dict()
        })

        try:
            inputs, targets, preprocessor, scale_targets = self._prepare(entry, data)
        except (PatternNetError, ValueError, TypeError) as e:
            logger.error(f"Could not prepare training data for '{model_id}': {e}")
            self._emit('training-failed', {'model_id': model_id, 'error': str(e)})
            return {
                'model_id': model_id,
                'success': False,
                'error': str(e),
                'partial_history': {}
            }

        network = Network(entry.architecture, seed=train_options.seed)

        def on_epoch(progress: Dict[str, Any]) -> None:
            self._emit('training-progress', {'model_id': model_id, **progress})

        harness = TrainingHarness(
            network,
            train_options,
            on_epoch=on_epoch,
            should_stop=should_stop,
            yield_func=yield_func
        )
        result = harness.run(
            inputs,
            targets,
            classification=entry.task_type is TaskType.CLASSIFICATION
        )
        result['model_id'] = model_id

        if not result['success']:
            logger.error(f"Training failed for {entry.name}: {result['error']}")
            self._emit('training-failed', {'model_id': model_id, 'error': result['error']})
            return result

        # Registered entries are never mutated; readers keep the one they fetched
        trained_entry = replace(
            entry,
            network=network,
            preprocessor=preprocessor,
            scale_targets=scale_targets,
            train_options=train_options.to_dict(),
            metrics=dict(result['metrics']),
            history=copy.deepcopy(result['history']),
            trained=True,
            trained_at=_now()
        )
        with self._lock:
            current = self._entries.get(model_id)
            installed = (current is not None
                         and current.config_dict() == entry.config_dict())
            if installed:
                self._entries[model_id] = trained_entry
        if not installed:
            message = f"Model '{model_id}' was replaced or deleted during training"
            logger.warning(message)
            self._emit('training-failed', {'model_id': model_id, 'error': message})
            return {
                'model_id': model_id,
                'success': False,
                'error': message,
                'partial_history': copy.deepcopy(result['history'])
            }

        logger.info(
            f"Model {entry.name} trained successfully: "
            f"loss={result['metrics']['loss']:.4f}, "
            f"accuracy={result['metrics']['accuracy']:.4f}"
        )
        self._emit('training-completed', {
            'model_id': model_id,
            'metrics': dict(result['metrics']),
            'epochs_completed': result['epochs_completed']
        })
        return result

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(self, model_id: str, model_input: Any) -> Dict[str, Any]:
        """
        Predict with a trained model.

        Returns:
            dict: ``{'model_id', 'prediction', 'confidence', 'raw',
            'success'}`` or ``{'model_id', 'success': False, 'error'}``

        Raises:
            ModelNotFoundError: If ``model_id`` is not registered
            ModelNotTrainedError: If it has no trained network
        """
        entry = self._trained_entry(model_id)
        try:
            processed = entry.preprocessor.transform(model_input)
            output = entry.network.predict(processed)
        except (PatternNetError, ValueError, TypeError) as e:
            logger.error(f"Prediction failed for model {model_id}: {e}")
            return {'model_id': model_id, 'success': False, 'error': str(e)}

        prediction = postprocess(output, entry.task_type, processed)
        if entry.task_type is TaskType.REGRESSION and entry.scale_targets:
            prediction['value'] = float(entry.preprocessor.inverse_transform(output[0]))
        if entry.task_type is TaskType.SEQUENCE:
            tokens = {index: token for token, index in entry.preprocessor.vocabulary.items()}
            prediction['token'] = tokens.get(prediction['next_token'])

        return {
            'model_id': model_id,
            'prediction': prediction,
            'confidence': confidence(output, entry.task_type),
            'raw': output.tolist(),
            'success': True
        }

    def predict_batch(self, model_id: str, inputs: Sequence[Any]) -> List[Dict[str, Any]]:
        return [self.predict(model_id, model_input) for model_input in inputs]

    def detect_anomalies(
        self,
        data: Sequence[Any],
        threshold: float = 0.1,
        normal_data: Optional[Any] = None,
        options: Optional[Dict[str, Any]] = None,
        model_id: str = 'anomaly'
    ) -> Dict[str, Any]:
        """
        Flag inputs whose reconstruction error exceeds ``threshold``.

        The autoencoder is trained first, on ``normal_data`` when given and
        on ``data`` otherwise, if it has not been trained yet.

        Returns:
            dict: ``anomalies`` (index, data, error, severity),
            ``total_checked``, ``anomaly_rate``, ``threshold``, ``success``
        """
        if (not _is_scalar(threshold) or not math.isfinite(threshold)
                or threshold <= 0):
            raise ConfigurationError(
                f"threshold must be a finite positive number, got {threshold!r}"
            )

        if not self._entry(model_id).trained:
            result = self.train_model(
                model_id,
                normal_data if normal_data is not None else data,
                options
            )
            if not result['success']:
                return {'success': False, 'error': result['error']}

        entry = self._trained_entry(model_id)
        anomalies = []
        for index, row in enumerate(data):
            try:
                processed = entry.preprocessor.transform(row)
                output = entry.network.predict(processed)
            except (PatternNetError, ValueError, TypeError) as e:
                return {'success': False, 'error': f"Row {index}: {e}"}

            error = reconstruction_error(processed, output)
            if error > threshold:
                anomalies.append({
                    'index': index,
                    'data': np.asarray(row, dtype=np.float64).tolist(),
                    'error': error,
                    'severity': anomaly_severity(error, threshold)
                })

        total = len(data)
        return {
            'anomalies': anomalies,
            'total_checked': total,
            'anomaly_rate': len(anomalies) / total if total else 0.0,
            'threshold': threshold,
            'success': True
        }

    def predict_time_series(
        self,
        history: Sequence[float],
        steps: int = 1,
        model_id: str = 'timeseries'
    ) -> Dict[str, Any]:
        """
        Forecast ``steps`` points, feeding each prediction back as input.

        Returns:
            dict: ``predictions``, ``confidences``, mean ``confidence``,
            ``horizon`` and ``success``
        """
        entry = self._trained_entry(model_id)
        window = entry.architecture.input_size
        if not isinstance(steps, int) or steps < 1:
            raise ConfigurationError(f"steps must be a positive integer, got {steps!r}")
        if len(history) < window:
            return {
                'success': False,
                'error': f"Need at least {window} history points, got {len(history)}"
            }

        current = [float(v) for v in history]
        predictions = []
        confidences = []
        for _ in range(steps):
            result = self.predict(model_id, current[-window:])
            if not result['success']:
                break
            value = result['prediction']['value']
            predictions.append(value)
            confidences.append(result['confidence'])
            current.append(value)

        return {
            'predictions': predictions,
            'confidences': confidences,
            'confidence': sum(confidences) / len(confidences) if confidences else 0.0,
            'horizon': steps,
            'success': len(predictions) == steps
        }

    def classify(
        self,
        model_input: Any,
        top_k: int = 3,
        model_id: str = 'classifier'
    ) -> Dict[str, Any]:
        """
        Rank classes for one input.

        Returns:
            dict: ``top_prediction``, ``top_k`` (sorted by descending
            probability), the full ``distribution``, ``confidence``
        """
        if not isinstance(top_k, int) or isinstance(top_k, bool) or top_k < 1:
            raise ConfigurationError(f"top_k must be a positive integer, got {top_k!r}")

        result = self.predict(model_id, model_input)
        if not result['success']:
            return result

        classes = ranked(result['raw'], 'class')
        return {
            'top_prediction': classes[0],
            'top_k': classes[:top_k],
            'distribution': result['raw'],
            'confidence': result['confidence'],
            'success': True
        }

    def cluster_data(
        self,
        data: Sequence[Any],
        num_clusters: int = 3,
        options: Optional[Dict[str, Any]] = None,
        model_id: str = 'clustering'
    ) -> Dict[str, Any]:
        """
        Embed points with the clustering network and bucket the embeddings.

        Cluster ids come from ``tasks.assign_cluster``, a deterministic hash
        of the embedding rather than a centroid search.
        """
        if not isinstance(num_clusters, int) or num_clusters < 1:
            raise ConfigurationError(
                f"num_clusters must be a positive integer, got {num_clusters!r}"
            )

        if not self._entry(model_id).trained:
            result = self.train_model(model_id, data, options)
            if not result['success']:
                return {'success': False, 'error': result['error']}

        entry = self._trained_entry(model_id)
        assignments = []
        for index, point in enumerate(data):
            try:
                embedding = entry.network.predict(entry.preprocessor.transform(point))
            except (PatternNetError, ValueError, TypeError) as e:
                return {'success': False, 'error': f"Point {index}: {e}"}
            assignments.append({
                'data': np.asarray(point, dtype=np.float64).tolist(),
                'cluster': assign_cluster(embedding, num_clusters),
                'embedding': embedding.tolist()
            })

        return {
            'clusters': assignments,
            'num_clusters': num_clusters,
            'stats': cluster_stats(assignments) if assignments else {},
            'success': True
        }

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_model(self, model_id: str) -> Dict[str, Any]:
        """
        Serialise a trained model into a self-describing bundle.

        Returns:
            dict: ``model_id``, ``config``, ``weights``, ``preprocessor``,
            ``scale_targets``, ``metrics``, ``history``, ``train_options``,
            ``exported_at``; JSON-serialisable

        Raises:
            ModelNotTrainedError: If the model has no trained network
        """
        entry = self._trained_entry(model_id)
        with self._lock:
            bundle = {
                'model_id': model_id,
                'config': entry.config_dict(),
                'weights': entry.network.save_weights(),
                'preprocessor': entry.preprocessor.to_dict(),
                'scale_targets': entry.scale_targets,
                'metrics': copy.deepcopy(entry.metrics),
                'history': copy.deepcopy(entry.history),
                'train_options': copy.deepcopy(entry.train_options),
                'exported_at': _now()
            }
            entry.network.mark_exported()
        logger.info(f"Exported model '{model_id}'")
        return bundle

    def import_model(self, bundle: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register a model from an exported bundle, replacing any entry with
        the same id.

        Raises:
            ConfigurationError: If the bundle is missing required fields
            ShapeMismatchError: If the weights do not fit the architecture
        """
        missing = [key for key in ('model_id', 'config', 'weights') if key not in bundle]
        if missing:
            raise ConfigurationError(f"Model bundle is missing {', '.join(missing)}")

        model_id = bundle['model_id']
        entry = ModelEntry.from_config(model_id, bundle['config'])
        network = Network(entry.architecture)
        network.load_weights(bundle['weights'])

        if bundle.get('preprocessor'):
            preprocessor = Preprocessor.from_dict(bundle['preprocessor'])
        else:
            preprocessor = Preprocessor(
                method=entry.preprocessing,
                width=(entry.architecture.input_size
                       if entry.preprocessing is Preprocessing.TOKENIZE else None)
            )

        entry.network = network
        entry.preprocessor = preprocessor
        entry.scale_targets = bool(bundle.get('scale_targets', False))
        entry.metrics = copy.deepcopy(bundle.get('metrics'))
        entry.history = copy.deepcopy(bundle.get('history'))
        entry.train_options = copy.deepcopy(bundle.get('train_options'))
        entry.trained = True
        entry.trained_at = bundle.get('exported_at') or _now()

        with self._lock:
            self._entries[model_id] = entry

        logger.info(f"Imported model {model_id}")
        return {'model_id': model_id, 'success': True}

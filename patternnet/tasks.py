"""
tasks.py
~~~~~~~~

Task-specific interpretation of raw network outputs.

Includes the anomaly severity buckets, reconstruction error, confidence
heuristics and the clustering helpers used by the model registry.
"""

import math
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from patternnet.exceptions import ConfigurationError, InsufficientDataError

SEQUENCE_ALTERNATIVES = 5


class TaskType(Enum):
    """Kinds of task a registered model can serve."""

    REGRESSION = 'regression'
    AUTOENCODER = 'autoencoder'
    CLASSIFICATION = 'classification'
    CLUSTERING = 'clustering'
    SEQUENCE = 'sequence'

    @classmethod
    def from_name(cls, value: Union[str, 'TaskType']) -> 'TaskType':
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ConfigurationError(f"Unknown task type: {value!r}")


def reconstruction_error(original: Sequence[float], reconstruction: Sequence[float]) -> float:
    """Root-mean-square difference between an input and its reconstruction."""
    original = np.asarray(original, dtype=np.float64)
    reconstruction = np.asarray(reconstruction, dtype=np.float64)
    if original.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((original - reconstruction) ** 2)))


def anomaly_severity(error: float, threshold: float) -> str:
    """
    Bucket a reconstruction error by its ratio to the detection threshold.

    Returns:
        str: ``'low'`` below 1.5x, ``'medium'`` below 2.5x, ``'high'`` below
        4x, ``'critical'`` otherwise
    """
    if threshold <= 0:
        raise ConfigurationError(f"Anomaly threshold must be positive, got {threshold}")
    ratio = error / threshold
    if ratio < 1.5:
        return 'low'
    if ratio < 2.5:
        return 'medium'
    if ratio < 4:
        return 'high'
    return 'critical'


def confidence(output: np.ndarray, task_type: TaskType) -> float:
    """
    Heuristic confidence for a raw output.

    Distributions (classification, sequence) score ``1 - H(p) / log(n)``;
    regression scores ``1 / (1 + |value|)``; every other task scores 0.5.
    """
    if task_type in (TaskType.CLASSIFICATION, TaskType.SEQUENCE):
        if output.size < 2:
            return 1.0
        safe = np.maximum(output, 1e-7)
        entropy = -float(np.sum(safe * np.log(safe)))
        return 1.0 - entropy / math.log(output.size)
    if task_type is TaskType.REGRESSION:
        return 1.0 / (1.0 + abs(float(output[0])))
    return 0.5


def ranked(scores: Sequence[float], key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Indices of ``scores`` as ``{key: i, 'probability': p}``, highest first."""
    entries = [{key: i, 'probability': float(p)} for i, p in enumerate(scores)]
    entries.sort(key=lambda entry: entry['probability'], reverse=True)
    return entries if limit is None else entries[:limit]


def postprocess(
    output: np.ndarray,
    task_type: TaskType,
    model_input: Optional[np.ndarray] = None
) -> Any:
    """
    Turn a raw output vector into a task-shaped prediction.

    Args:
        output: Raw network output
        task_type: Task the model serves
        model_input: Preprocessed input, needed for reconstruction error

    Returns:
        dict: The task's prediction record
    """
    if task_type is TaskType.CLASSIFICATION:
        index = int(np.argmax(output))
        return {
            'class': index,
            'probability': float(output[index]),
            'distribution': output.tolist()
        }
    if task_type is TaskType.REGRESSION:
        return {'value': float(output[0])}
    if task_type is TaskType.AUTOENCODER:
        error = reconstruction_error(model_input, output) if model_input is not None else None
        return {'reconstruction': output.tolist(), 'error': error}
    if task_type is TaskType.CLUSTERING:
        return {'embedding': output.tolist()}
    if task_type is TaskType.SEQUENCE:
        index = int(np.argmax(output))
        return {
            'next_token': index,
            'probability': float(output[index]),
            'alternatives': ranked(output, 'token', SEQUENCE_ALTERNATIVES)
        }
    raise ConfigurationError(f"Unhandled task type: {task_type}")


def one_hot(index: int, width: int) -> np.ndarray:
    vector = np.zeros(width)
    if not 0 <= index < width:
        raise ConfigurationError(f"Class index {index} outside [0, {width})")
    vector[index] = 1.0
    return vector


def principal_component_targets(vectors: Sequence[np.ndarray], dimensions: int) -> List[np.ndarray]:
    """
    Project vectors onto their leading principal components.

    Used as regression targets when an embedding network is trained without
    explicit targets. Missing components (fewer samples than dimensions)
    are filled with zeros.
    """
    if len(vectors) == 0:
        raise InsufficientDataError("Cannot compute embeddings of an empty dataset")
    matrix = np.vstack([np.asarray(v, dtype=np.float64) for v in vectors])
    centered = matrix - matrix.mean(axis=0)
    _, _, vt = np.linalg.svd(centered, full_matrices=False)
    scores = centered @ vt[:dimensions].T
    if scores.shape[1] < dimensions:
        scores = np.hstack([scores, np.zeros((scores.shape[0], dimensions - scores.shape[1]))])
    return list(scores)


def assign_cluster(embedding: Sequence[float], num_clusters: int) -> int:
    """
    Bucket an embedding into one of ``num_clusters`` ids.

    This is a deterministic hash of the embedding's absolute sum, not a
    distance-to-centroid assignment. Nearby embeddings usually share a
    bucket but nothing guarantees it.
    """
    if num_clusters < 1:
        raise ConfigurationError(f"num_clusters must be positive, got {num_clusters}")
    total = float(np.sum(np.abs(embedding)))
    return int(math.floor(total * num_clusters)) % num_clusters


def cluster_stats(assignments: Sequence[Dict[str, Any]]) -> Dict[int, Dict[str, Any]]:
    """Size, share and centroid of each cluster present in ``assignments``."""
    grouped: Dict[int, List[Sequence[float]]] = {}
    for item in assignments:
        grouped.setdefault(item['cluster'], []).append(item['embedding'])

    stats = {}
    for cluster_id in sorted(grouped):
        embeddings = grouped[cluster_id]
        stats[cluster_id] = {
            'size': len(embeddings),
            'percentage': len(embeddings) / len(assignments),
            'centroid': np.mean(np.asarray(embeddings, dtype=np.float64), axis=0).tolist()
        }
    return stats

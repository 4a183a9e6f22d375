"""
preprocessing.py
~~~~~~~~~~~~~~~~

Input preprocessing fitted on training data and replayed at prediction time.

Three methods are supported:
- normalize: min-max scaling using the dataset-wide minimum and maximum
- standardize: z-score scaling using the dataset-wide mean and deviation
- tokenize: token sequences become bag-of-tokens vectors over a vocabulary
  built in order of first appearance; index 0 is reserved for unknown tokens

The fitted statistics travel with exported models so that an imported model
transforms inputs exactly as the original did.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np

from patternnet.exceptions import ConfigurationError, InsufficientDataError

logger = logging.getLogger(__name__)

UNKNOWN_TOKEN = 0


class Preprocessing(Enum):
    """Preprocessing methods."""

    NORMALIZE = 'normalize'
    STANDARDIZE = 'standardize'
    TOKENIZE = 'tokenize'
    NONE = 'none'

    @classmethod
    def from_name(cls, value: Union[str, None, 'Preprocessing']) -> 'Preprocessing':
        """Resolve a method; ``None`` means no preprocessing."""
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ConfigurationError(f"Unknown preprocessing method: {value!r}")


def _flatten(rows: Sequence[Any]) -> np.ndarray:
    if len(rows) == 0:
        raise InsufficientDataError("Cannot fit preprocessing on an empty dataset")
    return np.concatenate(
        [np.ravel(np.asarray(row, dtype=np.float64)) for row in rows]
    )


@dataclass
class Preprocessor:
    """Fitted preprocessing state for one model."""

    method: Preprocessing = Preprocessing.NONE
    width: Optional[int] = None
    minimum: float = 0.0
    maximum: float = 1.0
    mean: float = 0.0
    std: float = 1.0
    vocabulary: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        self.method = Preprocessing.from_name(self.method)
        if self.method is Preprocessing.TOKENIZE and (not self.width or self.width < 2):
            raise ConfigurationError(
                "Tokenize preprocessing needs a vector width of at least 2"
            )

    def fit(self, rows: Sequence[Any]) -> 'Preprocessor':
        """
        Learn the statistics of ``rows``.

        Args:
            rows: Numeric vectors, or token sequences for ``tokenize``

        Returns:
            Preprocessor: ``self``, for chaining
        """
        if self.method is Preprocessing.NORMALIZE:
            values = _flatten(rows)
            self.minimum = float(np.min(values))
            self.maximum = float(np.max(values))
        elif self.method is Preprocessing.STANDARDIZE:
            values = _flatten(rows)
            self.mean = float(np.mean(values))
            self.std = float(np.std(values))
        elif self.method is Preprocessing.TOKENIZE:
            if len(rows) == 0:
                raise InsufficientDataError("Cannot build a vocabulary from no sequences")
            self.vocabulary = {}
            self.extend_vocabulary(token for row in rows for token in row)
        return self

    def extend_vocabulary(self, tokens: Iterable[Any]) -> None:
        """Add unseen tokens while the vocabulary has room for them."""
        dropped = 0
        for token in tokens:
            key = str(token)
            if key in self.vocabulary:
                continue
            next_index = len(self.vocabulary) + 1
            if next_index >= self.width:
                dropped += 1
                continue
            self.vocabulary[key] = next_index
        if dropped:
            logger.warning(
                f"Vocabulary is full at {self.width - 1} tokens; "
                f"{dropped} token occurrence(s) will map to unknown"
            )

    def token_index(self, token: Any) -> int:
        """Vocabulary index of ``token`` (0 when unknown)."""
        return self.vocabulary.get(str(token), UNKNOWN_TOKEN)

    def transform(self, row: Any) -> np.ndarray:
        """Apply the fitted preprocessing to one input."""
        if self.method is Preprocessing.TOKENIZE:
            vector = np.zeros(self.width)
            tokens = list(row)
            for token in tokens:
                vector[self.token_index(token)] += 1.0
            if tokens:
                vector /= len(tokens)
            return vector

        values = np.asarray(row, dtype=np.float64)
        if self.method is Preprocessing.NORMALIZE:
            span = (self.maximum - self.minimum) or 1.0
            return (values - self.minimum) / span
        if self.method is Preprocessing.STANDARDIZE:
            return (values - self.mean) / (self.std or 1.0)
        return values

    def transform_many(self, rows: Sequence[Any]) -> List[np.ndarray]:
        return [self.transform(row) for row in rows]

    def inverse_transform(self, values: Any) -> np.ndarray:
        """Map scaled values back to the original units (identity for tokenize)."""
        values = np.asarray(values, dtype=np.float64)
        if self.method is Preprocessing.NORMALIZE:
            return values * ((self.maximum - self.minimum) or 1.0) + self.minimum
        if self.method is Preprocessing.STANDARDIZE:
            return values * (self.std or 1.0) + self.mean
        return values

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method.value,
            'width': self.width,
            'minimum': self.minimum,
            'maximum': self.maximum,
            'mean': self.mean,
            'std': self.std,
            'vocabulary': dict(self.vocabulary),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Preprocessor':
        return cls(
            method=data.get('method'),
            width=data.get('width'),
            minimum=data.get('minimum', 0.0),
            maximum=data.get('maximum', 1.0),
            mean=data.get('mean', 0.0),
            std=data.get('std', 1.0),
            vocabulary=dict(data.get('vocabulary') or {}),
        )

"""
exceptions.py
~~~~~~~~~~~~~

Error hierarchy for the network engine, training harness and model registry.
"""


class PatternNetError(Exception):
    """Base class for every error raised by patternnet."""


class ConfigurationError(PatternNetError):
    """Invalid architecture, activation, optimizer or training options."""


class ShapeMismatchError(PatternNetError):
    """Input, target or weight bundle does not match the architecture."""


class StaleCacheError(PatternNetError):
    """Backward pass or weight update without a matching training forward pass."""


class InsufficientDataError(PatternNetError):
    """Empty or too-small batch or dataset."""


class NumericalInstabilityError(PatternNetError):
    """NaN or infinity produced in a loss value or in the parameters."""


class ModelNotFoundError(PatternNetError):
    """No model is registered under the requested id."""


class ModelNotTrainedError(PatternNetError):
    """The model is registered but has no trained network bound to it."""

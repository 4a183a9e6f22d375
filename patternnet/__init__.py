"""
patternnet package
~~~~~~~~~~~~~~~~~~

Feed-forward neural networks for pattern recognition tasks.
Contains the network engine, activation and loss functions, the training
harness, the task-aware model registry, model persistence and the API server.
"""

__version__ = "1.0.0"

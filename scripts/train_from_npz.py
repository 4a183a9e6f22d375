#!/usr/bin/env python3
"""
Train a registered model from an NPZ dataset and save it to the model store.

The NPZ file must contain an ``inputs`` array and, unless the task derives
its own targets (autoencoder, clustering, flat time series), a ``targets``
array.

Usage:
    python scripts/train_from_npz.py data/xor.npz --model-id classifier \\
        --epochs 200 --learning-rate 0.01 --model-dir models

The script will:
1. Load the arrays from the NPZ file
2. Train the chosen model from a default registry
3. Export the trained model and save it to the SQLite store
"""

import argparse
import os
import sys
import logging
from typing import Any, Dict

import numpy as np

from patternnet import model_persistence
from patternnet.exceptions import PatternNetError
from patternnet.registry import ModelRegistry


def load_dataset(filepath: str) -> Dict[str, Any]:
    """
    Load training data from an NPZ file.

    Args:
        filepath: Path to the .npz file

    Returns:
        dict: ``{'inputs': [...], 'targets': [...]}`` (targets omitted when
        the file has none)
    """
    print(f"📂 Loading dataset from: {filepath}")

    with np.load(filepath) as data:
        if 'inputs' not in data:
            raise KeyError(f"{filepath} has no 'inputs' array")
        dataset = {'inputs': data['inputs'].tolist()}
        if 'targets' in data:
            dataset['targets'] = data['targets'].tolist()

    print(f"✅ Loaded {len(dataset['inputs'])} samples"
          f"{' with targets' if 'targets' in dataset else ''}")
    return dataset


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.split('\n\n')[0].strip())
    parser.add_argument('dataset', help='Path to an .npz file')
    parser.add_argument('--model-id', default='regression',
                        help='Registered model to train (default: regression)')
    parser.add_argument('--epochs', type=int, default=100)
    parser.add_argument('--batch-size', type=int, default=32)
    parser.add_argument('--learning-rate', type=float, default=0.001)
    parser.add_argument('--optimizer', default='adam')
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--model-dir', default=os.environ.get('PATTERNNET_MODEL_DIR', 'models'))
    return parser.parse_args(argv)


def main(argv=None):
    """Train, export and save one model."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print(f"Training '{args.model_id}' from {args.dataset}")
    print("=" * 60)

    if not os.path.exists(args.dataset):
        print(f"❌ Error: Dataset not found: {args.dataset}")
        sys.exit(1)

    try:
        dataset = load_dataset(args.dataset)

        registry = ModelRegistry(seed=args.seed)
        result = registry.train_model(args.model_id, dataset, {
            'epochs': args.epochs,
            'batch_size': args.batch_size,
            'learning_rate': args.learning_rate,
            'optimizer': args.optimizer,
        })
        if not result['success']:
            print(f"\n❌ Training failed: {result['error']}")
            sys.exit(1)

        metrics = result['metrics']
        print(f"\n✅ Trained for {result['epochs_completed']} epoch(s): "
              f"loss={metrics['loss']:.4f}, accuracy={metrics['accuracy']:.4f}")

        bundle = registry.export_model(args.model_id)
        if not model_persistence.save_model(bundle, args.model_dir):
            print(f"\n❌ Could not save model to {args.model_dir}")
            sys.exit(1)

        print(f"\n💾 Saved '{args.model_id}' to {args.model_dir}")

    except (KeyError, OSError, PatternNetError) as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()

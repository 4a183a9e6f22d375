"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based persistence for exported model bundles.

Bundles are the self-describing dictionaries produced by
``ModelRegistry.export_model``; they are stored as JSON so that a reloaded
bundle imports into a network with bit-identical predictions.
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager
import numpy as np

# Configure module logger
logger = logging.getLogger(__name__)

DB_FILENAME = 'models.db'


class BundleEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        """
        Convert numpy values to plain Python for JSON serialization.

        Args:
            obj: Object to serialize

        Returns:
            JSON-serializable representation
        """
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


class ModelDatabase:
    """
    Manages the SQLite database holding exported models.

    The database stores:
    - Model metadata (task type, architecture, training status, accuracy)
    - The full export bundle as JSON text
    """

    def __init__(self, db_path: str = f'models/{DB_FILENAME}'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS models (
                    model_id TEXT PRIMARY KEY,
                    task_type TEXT NOT NULL,
                    architecture TEXT NOT NULL,
                    bundle TEXT NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 1,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_models_created_at
                ON models(created_at DESC)
            ''')

    def save_model_to_db(self, bundle: Dict[str, Any]) -> bool:
        """
        Insert or replace an exported model.

        Args:
            bundle: Export bundle with at least ``model_id`` and ``config``

        Returns:
            bool: True if successful

        Raises:
            ValueError: If the bundle is incomplete or accuracy is out of range
        """
        model_id = bundle.get('model_id')
        config = bundle.get('config')
        if not model_id or not isinstance(config, dict):
            raise ValueError("Bundle must contain 'model_id' and a 'config' dict")

        accuracy = (bundle.get('metrics') or {}).get('accuracy')
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        # Architecture kept as its own column for queryability
        architecture_json = json.dumps(config.get('architecture'), cls=BundleEncoder)
        bundle_json = json.dumps(bundle, cls=BundleEncoder)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT created_at FROM models WHERE model_id = ?',
                (model_id,)
            )
            existing = cursor.fetchone()
            if existing is None:
                cursor.execute('''
                    INSERT INTO models
                    (model_id, task_type, architecture, bundle, trained, accuracy)
                    VALUES (?, ?, ?, ?, 1, ?)
                ''', (model_id, config.get('type', 'regression'),
                      architecture_json, bundle_json, accuracy))
            else:
                cursor.execute('''
                    UPDATE models
                    SET task_type = ?, architecture = ?, bundle = ?,
                        accuracy = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE model_id = ?
                ''', (config.get('type', 'regression'), architecture_json,
                      bundle_json, accuracy, model_id))

        logger.info(
            f"Saved model '{model_id}' ({config.get('type')}), accuracy={accuracy}"
        )
        return True

    def load_model_from_db(self, model_id: str) -> Optional[Dict[str, Any]]:
        """
        Load an export bundle.

        Args:
            model_id: Unique identifier of the model

        Returns:
            Bundle dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT bundle FROM models WHERE model_id = ?',
                (model_id,)
            )
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Model '{model_id}' not found")
                return None

            bundle = json.loads(row['bundle'])
            logger.info(f"Loaded model '{model_id}'")
            return bundle

    def _row_metadata(self, row: sqlite3.Row) -> Dict[str, Any]:
        architecture = json.loads(row['architecture'])
        sizes = [architecture['inputSize'], *architecture['hiddenLayers'],
                 architecture['outputSize']]
        return {
            'model_id': row['model_id'],
            'task_type': row['task_type'],
            'architecture': architecture,
            'weights_shape': [
                [sizes[i], sizes[i + 1]] for i in range(len(sizes) - 1)
            ],
            'biases_shape': [[sizes[i + 1]] for i in range(len(sizes) - 1)],
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def list_models_from_db(self) -> List[Dict[str, Any]]:
        """
        List all stored models with metadata.

        Returns:
            List of model metadata dictionaries
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT model_id, task_type, architecture, trained, accuracy,
                       created_at, updated_at
                FROM models
                ORDER BY created_at DESC
            ''')
            models = [self._row_metadata(row) for row in cursor.fetchall()]

        logger.debug(f"Listed {len(models)} models")
        return models

    def delete_model_from_db(self, model_id: str) -> bool:
        """
        Delete a stored model.

        Args:
            model_id: Unique identifier of the model

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM models WHERE model_id = ?',
                (model_id,)
            )

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted model '{model_id}'")
            else:
                logger.warning(
                    f"Could not delete model '{model_id}': not found"
                )
            return deleted

    def delete_models_older_than(self, days: int) -> int:
        """
        Delete models created more than ``days`` days ago.

        Returns:
            int: Number of deleted models
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM models WHERE created_at < datetime('now', ?)",
                (f'-{int(days)} days',)
            )
            return cursor.rowcount

    def get_model_metadata_from_db(
        self,
        model_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get model metadata without decoding the bundle.

        Args:
            model_id: Unique identifier of the model

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT model_id, task_type, architecture, trained, accuracy,
                       created_at, updated_at
                FROM models
                WHERE model_id = ?
            ''', (model_id,))

            row = cursor.fetchone()
            if row is None:
                logger.warning(
                    f"Metadata for model '{model_id}' not found"
                )
                return None

            return self._row_metadata(row)


def _get_db(model_dir: str) -> ModelDatabase:
    """Open the database stored in ``model_dir``."""
    return ModelDatabase(db_path=os.path.join(model_dir, DB_FILENAME))


def save_model(bundle: Dict[str, Any], model_dir: str = 'models') -> bool:
    """
    Save an exported model bundle to the SQLite database.

    Args:
        bundle: Output of ``ModelRegistry.export_model``
        model_dir: Directory for the database file

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> bundle = registry.export_model("timeseries")
        >>> save_model(bundle)
        True
    """
    if not isinstance(bundle, dict):
        logger.error("Invalid bundle: must be a dictionary")
        return False

    model_id = bundle.get('model_id')
    try:
        return _get_db(model_dir).save_model_to_db(bundle)

    except ValueError as e:
        logger.error(f"Validation error saving model '{model_id}': {e}")
        return False
    except TypeError as e:
        logger.error(f"Serialization error saving model '{model_id}': {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving model '{model_id}': {e}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error saving model '{model_id}': {e}")
        return False


def load_model(model_id: str, model_dir: str = 'models') -> Optional[Dict[str, Any]]:
    """
    Load an exported model bundle from the SQLite database.

    Args:
        model_id: The unique identifier of the model to load
        model_dir: Directory where the database is stored

    Returns:
        The bundle, ready for ``ModelRegistry.import_model``, or None
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).load_model_from_db(model_id)

    except json.JSONDecodeError as e:
        logger.error(f"Decode error loading model '{model_id}': {e}")
        return None
    except sqlite3.Error as e:
        logger.error(f"Database error loading model '{model_id}': {e}")
        return None
    except Exception as e:
        logger.exception(f"Unexpected error loading model '{model_id}': {e}")
        return None


def list_saved_models(model_dir: str = 'models') -> List[Dict[str, Any]]:
    """
    List all saved models with their metadata.

    Args:
        model_dir: Directory where the database is stored

    Returns:
        list: A list of metadata dictionaries for each saved model
    """
    try:
        return _get_db(model_dir).list_models_from_db()

    except sqlite3.Error as e:
        logger.error(f"Database error listing models: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing models: {e}")
        return []
    except Exception as e:
        logger.exception(f"Unexpected error listing models: {e}")
        return []


def delete_model(model_id: str, model_dir: str = 'models') -> bool:
    """
    Delete a saved model from the database.

    Args:
        model_id: The unique identifier of the model to delete
        model_dir: Directory where the database is stored

    Returns:
        bool: True if deletion was successful, False otherwise
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return False

    try:
        return _get_db(model_dir).delete_model_from_db(model_id)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting model '{model_id}': {e}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error deleting model '{model_id}': {e}")
        return False


def delete_old_models(days: int = 2, model_dir: str = 'models') -> int:
    """
    Delete saved models older than ``days`` days.

    Returns:
        int: Number of deleted models, or -1 on error

    Raises:
        ValueError: If ``days`` is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        deleted = _get_db(model_dir).delete_models_older_than(days)
        logger.info(f"Deleted {deleted} model(s) older than {days} day(s)")
        return deleted

    except sqlite3.Error as e:
        logger.error(f"Database error deleting old models: {e}")
        return -1
    except Exception as e:
        logger.exception(f"Unexpected error deleting old models: {e}")
        return -1


def get_model_metadata(
    model_id: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a specific model without decoding its bundle.

    Args:
        model_id: The unique identifier of the model
        model_dir: Directory where the database is stored

    Returns:
        dict: Model metadata or None if not found
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).get_model_metadata_from_db(model_id)

    except sqlite3.Error as e:
        logger.error(
            f"Database error getting metadata for '{model_id}': {e}"
        )
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error getting metadata for '{model_id}': {e}"
        )
        return None
    except Exception as e:
        logger.exception(
            f"Unexpected error getting metadata for '{model_id}': {e}"
        )
        return None

"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for SQLite-based model persistence.
"""

import os
import sqlite3

import numpy as np
import pytest

from patternnet.model_persistence import (
    save_model,
    load_model,
    list_saved_models,
    delete_model,
    get_model_metadata,
    delete_old_models,
    ModelDatabase
)
from patternnet.registry import ModelRegistry

SMALL_CONFIG = {
    'name': 'Small Regressor',
    'type': 'regression',
    'architecture': {
        'inputSize': 3,
        'hiddenLayers': [4],
        'outputSize': 2,
        'activation': 'relu',
        'outputActivation': 'linear'
    },
    'preprocessing': 'standardize'
}


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def registry():
    """Registry holding one small regression model."""
    reg = ModelRegistry(with_defaults=False, seed=3)
    reg.register_model('small', SMALL_CONFIG)
    return reg


@pytest.fixture
def trained_registry(registry):
    """Registry whose small model has been trained briefly."""
    rng = np.random.default_rng(0)
    inputs = rng.normal(size=(12, 3)).tolist()
    targets = [[sum(x), x[0] - x[1]] for x in inputs]
    result = registry.train_model(
        'small',
        {'inputs': inputs, 'targets': targets},
        {'epochs': 3, 'batch_size': 4, 'learning_rate': 0.01}
    )
    assert result['success'] is True
    return registry


@pytest.fixture
def bundle(trained_registry):
    return trained_registry.export_model('small')


def _bundle_with_id(bundle, model_id, accuracy=None):
    copy = dict(bundle)
    copy['model_id'] = model_id
    copy['metrics'] = dict(bundle['metrics'], accuracy=accuracy or 0.0)
    return copy


def _age_model(db_dir, model_id, days):
    conn = sqlite3.connect(os.path.join(db_dir, "models.db"))
    cursor = conn.cursor()
    cursor.execute('''
        UPDATE models
        SET created_at = datetime('now', ?)
        WHERE model_id = ?
    ''', (f'-{days} days', model_id))
    conn.commit()
    conn.close()


@pytest.mark.unit
class TestModelPersistence:
    """Test basic model persistence operations."""

    def test_save_model_creates_database(self, bundle, temp_db_dir):
        """Test that saving a model creates the database file."""
        success = save_model(bundle, model_dir=temp_db_dir)

        assert success is True
        assert os.path.exists(f"{temp_db_dir}/models.db")

    def test_save_model_with_metadata(self, bundle, temp_db_dir):
        """Test that model metadata is saved correctly."""
        save_model(_bundle_with_id(bundle, 'meta', accuracy=0.85), model_dir=temp_db_dir)

        metadata = get_model_metadata('meta', temp_db_dir)
        assert metadata is not None
        assert metadata['model_id'] == 'meta'
        assert metadata['task_type'] == 'regression'
        assert metadata['trained'] is True
        assert metadata['accuracy'] == 0.85
        assert metadata['architecture']['hiddenLayers'] == [4]
        assert metadata['weights_shape'] == [[3, 4], [4, 2]]
        assert metadata['biases_shape'] == [[4], [2]]

    def test_load_model_returns_bundle(self, bundle, temp_db_dir):
        """Test that loading returns the bundle that was saved."""
        save_model(bundle, model_dir=temp_db_dir)
        loaded = load_model('small', temp_db_dir)

        assert loaded is not None
        assert loaded['model_id'] == 'small'
        assert loaded['config'] == bundle['config']
        assert loaded['preprocessor'] == bundle['preprocessor']

    def test_load_nonexistent_model(self, temp_db_dir):
        """Test that loading a non-existent model returns None."""
        assert load_model("nonexistent", temp_db_dir) is None

    def test_load_preserves_weights(self, bundle, temp_db_dir):
        """Test that saved weights are preserved exactly after loading."""
        save_model(bundle, model_dir=temp_db_dir)
        loaded = load_model('small', temp_db_dir)

        for original_w, loaded_w in zip(bundle['weights']['weights'],
                                        loaded['weights']['weights']):
            assert np.array_equal(np.array(original_w), np.array(loaded_w))
        for original_b, loaded_b in zip(bundle['weights']['biases'],
                                        loaded['weights']['biases']):
            assert np.array_equal(np.array(original_b), np.array(loaded_b))

    def test_save_accepts_numpy_values(self, bundle, temp_db_dir):
        """Bundles holding numpy arrays and scalars are serialised."""
        bundle = dict(bundle)
        bundle['weights'] = dict(bundle['weights'])
        bundle['weights']['weights'] = [np.array(w) for w in bundle['weights']['weights']]
        bundle['metrics'] = {'loss': np.float64(0.5), 'accuracy': np.float64(0.25)}

        assert save_model(bundle, model_dir=temp_db_dir) is True
        assert load_model('small', temp_db_dir)['metrics'] == {'loss': 0.5, 'accuracy': 0.25}

    def test_save_rejects_invalid_bundle(self, temp_db_dir):
        assert save_model("not a bundle", model_dir=temp_db_dir) is False
        assert save_model({'model_id': 'x'}, model_dir=temp_db_dir) is False

    def test_save_rejects_out_of_range_accuracy(self, bundle, temp_db_dir):
        bad = dict(bundle, metrics={'loss': 0.1, 'accuracy': 1.5})
        assert save_model(bad, model_dir=temp_db_dir) is False

    def test_list_saved_models_empty(self, temp_db_dir):
        """Test listing models when database is empty."""
        assert list_saved_models(temp_db_dir) == []

    def test_list_saved_models(self, bundle, temp_db_dir):
        """Test that listing models returns every saved id."""
        save_model(_bundle_with_id(bundle, 'm1', 0.9), model_dir=temp_db_dir)
        save_model(_bundle_with_id(bundle, 'm2'), model_dir=temp_db_dir)

        models = list_saved_models(temp_db_dir)

        assert len(models) == 2
        assert {m['model_id'] for m in models} == {'m1', 'm2'}

    def test_list_saved_models_includes_metadata(self, bundle, temp_db_dir):
        """Test that listed models include all expected metadata fields."""
        save_model(_bundle_with_id(bundle, 'metadata_test', 0.75), model_dir=temp_db_dir)

        model = list_saved_models(temp_db_dir)[0]

        assert model['model_id'] == 'metadata_test'
        assert model['accuracy'] == 0.75
        for key in ('task_type', 'architecture', 'trained', 'created_at',
                    'updated_at', 'weights_shape', 'biases_shape'):
            assert key in model

    def test_delete_model_success(self, bundle, temp_db_dir):
        """Test successful model deletion."""
        save_model(bundle, model_dir=temp_db_dir)
        assert load_model('small', temp_db_dir) is not None

        assert delete_model('small', temp_db_dir) is True
        assert load_model('small', temp_db_dir) is None

    def test_delete_nonexistent_model(self, temp_db_dir):
        """Test that deleting a non-existent model returns False."""
        ModelDatabase(db_path=f'{temp_db_dir}/models.db')

        assert delete_model("nonexistent", temp_db_dir) is False

    def test_invalid_model_id(self, temp_db_dir):
        assert load_model('', temp_db_dir) is None
        assert delete_model('', temp_db_dir) is False
        assert get_model_metadata('', temp_db_dir) is None

    def test_update_model(self, bundle, temp_db_dir):
        """Test that saving a model with the same ID updates it."""
        save_model(_bundle_with_id(bundle, 'update_test', 0.5), model_dir=temp_db_dir)
        first = get_model_metadata('update_test', temp_db_dir)

        save_model(_bundle_with_id(bundle, 'update_test', 0.88), model_dir=temp_db_dir)
        second = get_model_metadata('update_test', temp_db_dir)

        assert second['accuracy'] == 0.88
        assert second['created_at'] == first['created_at']
        assert len(list_saved_models(temp_db_dir)) == 1


@pytest.mark.integration
class TestPersistenceIntegration:
    """Integration tests for model persistence."""

    def test_reloaded_model_predicts_identically(self, trained_registry, bundle, temp_db_dir):
        """A saved and reloaded bundle imports into an identical model."""
        save_model(bundle, model_dir=temp_db_dir)

        fresh = ModelRegistry(with_defaults=False)
        fresh.import_model(load_model('small', temp_db_dir))

        sample = [0.3, -1.2, 2.0]
        assert fresh.predict('small', sample)['raw'] == trained_registry.predict('small', sample)['raw']

    def test_multiple_models_coexist(self, trained_registry, temp_db_dir):
        """Test that several exported models can share the database."""
        rng = np.random.default_rng(1)
        series = np.sin(np.linspace(0, 6, 40)).tolist()
        registry = ModelRegistry(seed=1)
        registry.register_model('timeseries', {
            'type': 'regression',
            'architecture': {'inputSize': 5, 'hiddenLayers': [6], 'outputSize': 1,
                             'activation': 'tanh', 'outputActivation': 'linear'},
            'preprocessing': 'normalize'
        })
        assert registry.train_model('timeseries', series, {'epochs': 2})['success']
        assert registry.train_model(
            'anomaly',
            rng.normal(size=(10, 20)).tolist(),
            {'epochs': 1}
        )['success']

        bundles = [
            trained_registry.export_model('small'),
            registry.export_model('timeseries'),
            registry.export_model('anomaly')
        ]
        for b in bundles:
            assert save_model(b, model_dir=temp_db_dir) is True

        saved = list_saved_models(temp_db_dir)
        assert len(saved) == len(bundles)
        for b in bundles:
            loaded = load_model(b['model_id'], temp_db_dir)
            assert loaded['config']['architecture'] == b['config']['architecture']

    def test_repeated_operations(self, bundle, temp_db_dir):
        """Test that the database handles a sequence of operations."""
        model_ids = [f"concurrent_{i}" for i in range(5)]

        for model_id in model_ids:
            save_model(_bundle_with_id(bundle, model_id), model_dir=temp_db_dir)

        assert all(load_model(m, temp_db_dir) is not None for m in model_ids)

        for model_id in model_ids:
            assert delete_model(model_id, temp_db_dir) is True

        assert list_saved_models(temp_db_dir) == []


class TestDeleteOldModels:
    """Tests for cleanup of old models."""

    def test_delete_old_models_basic(self, bundle, temp_db_dir):
        save_model(bundle, model_dir=temp_db_dir)
        _age_model(temp_db_dir, 'small', 3)

        assert delete_old_models(days=2, model_dir=temp_db_dir) == 1
        assert load_model('small', temp_db_dir) is None

    def test_delete_old_models_preserves_recent(self, bundle, temp_db_dir):
        save_model(bundle, model_dir=temp_db_dir)

        assert delete_old_models(days=2, model_dir=temp_db_dir) == 0
        assert load_model('small', temp_db_dir) is not None

    def test_delete_old_models_mixed_ages(self, bundle, temp_db_dir):
        for model_id in ('old_1', 'old_2', 'recent'):
            save_model(_bundle_with_id(bundle, model_id), model_dir=temp_db_dir)
        _age_model(temp_db_dir, 'old_1', 5)
        _age_model(temp_db_dir, 'old_2', 3)

        assert delete_old_models(days=2, model_dir=temp_db_dir) == 2
        assert [m['model_id'] for m in list_saved_models(temp_db_dir)] == ['recent']

    def test_delete_old_models_empty_database(self, temp_db_dir):
        assert delete_old_models(days=2, model_dir=temp_db_dir) == 0

    def test_delete_old_models_negative_days(self, temp_db_dir):
        with pytest.raises(ValueError):
            delete_old_models(days=-1, model_dir=temp_db_dir)

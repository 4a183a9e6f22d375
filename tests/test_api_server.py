"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API and its WebSocket training events.
"""

import base64

import pytest

from patternnet.api_server import create_app
from patternnet.config import Settings
from patternnet.registry import ModelRegistry

XOR_CONFIG = {
    'name': 'XOR',
    'type': 'classification',
    'architecture': {
        'inputSize': 2,
        'hiddenLayers': [8],
        'outputSize': 2,
        'activation': 'tanh',
        'outputActivation': 'softmax'
    },
    'preprocessing': 'none'
}

XOR_DATA = {
    'inputs': [[0, 0], [0, 1], [1, 0], [1, 1]] * 5,
    'targets': [0, 1, 1, 0] * 5
}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        model_dir=str(tmp_path / 'models'),
        async_mode='threading',
        background_training=False
    )


@pytest.fixture
def server(settings):
    registry = ModelRegistry(with_defaults=False, seed=0)
    registry.register_model('xor', XOR_CONFIG)
    app, socketio = create_app(registry, settings)
    app.config['TESTING'] = True
    return app, socketio


@pytest.fixture
def client(server):
    app, _ = server
    return app.test_client()


@pytest.fixture
def socket_client(server, client):
    app, socketio = server
    return socketio.test_client(app, flask_test_client=client)


@pytest.fixture
def trained_client(client):
    response = client.post('/api/models/xor/train', json={
        'data': XOR_DATA,
        'options': {'epochs': 3, 'batchSize': 4, 'learningRate': 0.05}
    })
    assert response.status_code == 202
    return client


@pytest.mark.unit
class TestCatalogueEndpoints:

    def test_status(self, client):
        response = client.get('/api/status')
        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'online'
        assert data['models'] == 1
        assert data['trained_models'] == 0
        assert data['training_jobs'] == 0

    def test_list_models(self, client):
        data = client.get('/api/models').get_json()
        assert [m['id'] for m in data['models']] == ['xor']
        assert data['models'][0]['status'] == 'in_memory'

    def test_register_model(self, client):
        response = client.post('/api/models', json={'model_id': 'reg', 'config': {
            'type': 'regression',
            'architecture': {'inputSize': 3, 'hiddenLayers': [4], 'outputSize': 1}
        }})
        assert response.status_code == 201
        assert response.get_json()['id'] == 'reg'
        assert client.get('/api/models/reg').status_code == 200

    def test_register_invalid_config(self, client):
        response = client.post('/api/models', json={'model_id': 'bad', 'config': {'type': 'magic'}})
        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'ConfigurationError'

    def test_register_missing_config(self, client):
        assert client.post('/api/models', json={'model_id': 'x'}).status_code == 400

    def test_get_unknown_model(self, client):
        assert client.get('/api/models/nope').status_code == 404

    def test_delete_model(self, client):
        response = client.delete('/api/models/xor')
        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert client.delete('/api/models/xor').status_code == 404


@pytest.mark.integration
class TestTrainingEndpoints:

    def test_train_unknown_model(self, client):
        response = client.post('/api/models/nope/train', json={'data': XOR_DATA})
        assert response.status_code == 404

    def test_train_requires_data(self, client):
        assert client.post('/api/models/xor/train', json={}).status_code == 400

    def test_train_rejects_bad_options(self, client):
        response = client.post('/api/models/xor/train', json={
            'data': XOR_DATA, 'options': {'epochs': -5}
        })
        assert response.status_code == 400

    def test_train_rejects_non_numeric_learning_rate(self, client):
        response = client.post('/api/models/xor/train', json={
            'data': XOR_DATA, 'options': {'learningRate': 'fast'}
        })
        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'ConfigurationError'

    def test_train_completes_job(self, client):
        response = client.post('/api/models/xor/train', json={
            'data': XOR_DATA, 'options': {'epochs': 2}
        })
        assert response.status_code == 202
        job_id = response.get_json()['job_id']

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100
        assert set(job['metrics']) == {'loss', 'accuracy'}
        assert client.get('/api/models/xor').get_json()['trained'] is True

    def test_training_emits_socket_events(self, client, socket_client):
        client.post('/api/models/xor/train', json={'data': XOR_DATA, 'options': {'epochs': 2}})

        received = socket_client.get_received()
        names = [event['name'] for event in received]
        assert names.count('training_update') == 2
        assert names[-1] == 'training_complete'
        update = next(e for e in received if e['name'] == 'training_update')['args'][0]
        assert update['model_id'] == 'xor'
        assert update['total_epochs'] == 2

    def test_training_failure_emits_error(self, client, socket_client):
        response = client.post('/api/models/xor/train', json={
            'data': {'inputs': [[0, 0], [1, 1]]}
        })
        job_id = response.get_json()['job_id']

        assert client.get(f'/api/training/{job_id}').get_json()['status'] == 'failed'
        names = [event['name'] for event in socket_client.get_received()]
        assert 'training_error' in names

    def test_unknown_job(self, client):
        assert client.get('/api/training/missing').status_code == 404
        assert client.post('/api/training/missing/cancel').status_code == 404

    def test_history_plot(self, trained_client):
        response = trained_client.get('/api/models/xor/history_plot')
        assert response.status_code == 200
        image = base64.b64decode(response.get_json()['image_data'])
        assert image.startswith(b'\x89PNG')

    def test_history_plot_untrained(self, client):
        assert client.get('/api/models/xor/history_plot').status_code == 404


@pytest.mark.integration
class TestPredictionEndpoints:

    def test_predict_untrained(self, client):
        response = client.post('/api/models/xor/predict', json={'input': [0, 1]})
        assert response.status_code == 409

    def test_predict_requires_input(self, trained_client):
        assert trained_client.post('/api/models/xor/predict', json={}).status_code == 400

    def test_predict(self, trained_client):
        response = trained_client.post('/api/models/xor/predict', json={'input': [0, 1]})
        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is True
        assert data['prediction']['class'] in (0, 1)
        assert len(data['raw']) == 2

    def test_predict_wrong_width(self, trained_client):
        response = trained_client.post('/api/models/xor/predict', json={'input': [0, 1, 1]})
        assert response.status_code == 400

    def test_predict_batch(self, trained_client):
        response = trained_client.post('/api/models/xor/predict_batch',
                                       json={'inputs': [[0, 0], [1, 0]]})
        assert response.status_code == 200
        assert len(response.get_json()['results']) == 2

    def test_classify(self, trained_client):
        response = trained_client.post('/api/classify', json={
            'input': [1, 0], 'model_id': 'xor', 'top_k': 2
        })
        assert response.status_code == 200
        assert len(response.get_json()['top_k']) == 2

    def test_anomalies_require_list(self, client):
        assert client.post('/api/anomalies', json={'data': 'x'}).status_code == 400

    def test_anomalies_reject_non_numeric_threshold(self, client):
        response = client.post('/api/anomalies', json={
            'data': [[0, 1]], 'threshold': 'high', 'model_id': 'xor'
        })
        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'ConfigurationError'

    def test_cluster_endpoint_trains_on_demand(self, client):
        client.post('/api/models', json={'model_id': 'clusters', 'config': {
            'type': 'clustering',
            'architecture': {'inputSize': 3, 'hiddenLayers': [4], 'outputSize': 2,
                             'activation': 'tanh', 'outputActivation': 'linear'},
            'preprocessing': 'standardize'
        }})
        points = [[i, i % 3, -i] for i in range(10)]
        response = client.post('/api/cluster', json={
            'data': points, 'num_clusters': 2, 'model_id': 'clusters',
            'options': {'epochs': 2}
        })
        assert response.status_code == 200
        assert len(response.get_json()['clusters']) == 10

    def test_timeseries_unknown_model(self, client):
        response = client.post('/api/timeseries', json={'history': [1, 2, 3]})
        assert response.status_code == 404


@pytest.mark.integration
class TestPersistenceEndpoints:

    def test_export_and_import(self, trained_client):
        bundle = trained_client.get('/api/models/xor/export').get_json()
        assert bundle['model_id'] == 'xor'

        bundle['model_id'] = 'xor_copy'
        response = trained_client.post('/api/models/import', json=bundle)
        assert response.status_code == 201

        original = trained_client.post('/api/models/xor/predict', json={'input': [1, 1]})
        copy = trained_client.post('/api/models/xor_copy/predict', json={'input': [1, 1]})
        assert original.get_json()['raw'] == copy.get_json()['raw']

    def test_import_requires_bundle(self, client):
        assert client.post('/api/models/import', json={}).status_code == 400

    def test_save_and_load(self, trained_client):
        assert trained_client.post('/api/models/xor/save').status_code == 200

        saved = trained_client.get('/api/models').get_json()['models']
        assert any(m.get('id') == 'xor' for m in saved)

        trained_client.delete('/api/models/xor')
        assert trained_client.post('/api/models/xor/load').status_code == 404

    def test_load_restores_saved_model(self, trained_client):
        trained_client.post('/api/models/xor/save')
        before = trained_client.post('/api/models/xor/predict', json={'input': [0, 1]}).get_json()

        trained_client.post('/api/models', json={'model_id': 'xor', 'config': XOR_CONFIG})
        assert trained_client.post('/api/models/xor/load').status_code == 200

        after = trained_client.post('/api/models/xor/predict', json={'input': [0, 1]}).get_json()
        assert after['raw'] == before['raw']

    def test_saved_models_listed_when_not_in_memory(self, trained_client, settings):
        trained_client.post('/api/models/xor/save')
        app, _ = create_app(ModelRegistry(with_defaults=False), settings)

        models = app.test_client().get('/api/models').get_json()['models']
        assert [m['model_id'] for m in models] == ['xor']
        assert models[0]['status'] == 'saved'

    def test_reload_saved(self, trained_client, settings):
        trained_client.post('/api/models/xor/save')
        registry = ModelRegistry(with_defaults=False)
        create_app(registry, settings, reload_saved=True)
        assert registry.is_trained('xor')

    def test_cleanup(self, client):
        response = client.post('/api/models/cleanup', json={'days': 2})
        assert response.status_code == 200
        assert response.get_json()['deleted_count'] == 0
        assert client.post('/api/models/cleanup', json={'days': -1}).status_code == 400

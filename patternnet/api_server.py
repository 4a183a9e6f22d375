"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for the model registry.

This module provides endpoints for:
- Registering, listing and deleting model configurations
- Training models with real-time progress updates via WebSockets
- Task-aware predictions (classification, anomalies, time series, clusters)
- Exporting/importing model bundles and persisting them to SQLite

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- Matplotlib for training-history plots

The registry is created by ``create_app`` (or passed in by the caller);
nothing is shared at module level.
"""

import os
import sys
import uuid
import base64
import logging
import threading
from io import BytesIO
from typing import Dict, Any, List, Optional, Tuple

import gevent
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Local imports
from patternnet import model_persistence
from patternnet.config import Settings
from patternnet.exceptions import (
    ConfigurationError,
    InsufficientDataError,
    ModelNotFoundError,
    ModelNotTrainedError,
    ShapeMismatchError
)
from patternnet.registry import ModelRegistry
from patternnet.training import TrainingOptions

logger = logging.getLogger(__name__)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging(settings: Settings) -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level = getattr(logging, settings.log_level, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if settings.is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('patternnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def create_history_plot(history: Dict[str, List[float]], title: str) -> str:
    """
    Create a base64-encoded PNG of training and validation loss curves.

    Args:
        history: Training history with ``loss`` and ``val_loss`` lists
        title: Plot title

    Returns:
        Base64-encoded PNG image string
    """
    fig, ax = plt.subplots(figsize=(6, 4))
    epochs = range(1, len(history.get('loss', [])) + 1)
    ax.plot(epochs, history.get('loss', []), label='loss')
    ax.plot(epochs, history.get('val_loss', []), label='val_loss')
    ax.set_xlabel('Epoch')
    ax.set_ylabel('Loss')
    ax.set_title(title)
    ax.legend()

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close(fig)

    return img_base64


def reload_saved_models(registry: ModelRegistry, model_dir: str) -> int:
    """
    Import every bundle stored in ``model_dir`` into ``registry``.

    Returns:
        int: Number of models restored
    """
    saved_models = model_persistence.list_saved_models(model_dir)
    if not saved_models:
        logger.info("No saved models to reload")
        return 0

    loaded_count = 0
    for info in saved_models:
        model_id = info['model_id']
        bundle = model_persistence.load_model(model_id, model_dir)
        if bundle is None:
            logger.warning(f"Failed to load model {model_id}")
            continue
        try:
            registry.import_model(bundle)
            loaded_count += 1
        except Exception as e:
            logger.exception(f"Error importing model {model_id}: {e}")

    logger.info(f"Reloaded {loaded_count} model(s) from database")
    return loaded_count


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    registry: Optional[ModelRegistry] = None,
    settings: Optional[Settings] = None,
    reload_saved: bool = False
) -> Tuple[Flask, SocketIO]:
    """
    Build the Flask app and its SocketIO server around one registry.

    Args:
        registry: Registry to serve (a default one is created if None)
        settings: Runtime settings (read from the environment if None)
        reload_saved: Import models stored in ``settings.model_dir``

    Returns:
        tuple: ``(app, socketio)``
    """
    settings = settings or Settings.from_env()
    registry = registry if registry is not None else ModelRegistry()

    app = Flask(__name__)
    CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

    # SocketIO enables real-time communication (WebSockets) for training updates
    socketio = SocketIO(
        app,
        cors_allowed_origins="*",
        async_mode=settings.async_mode,
        logger=not settings.is_production,
        engineio_logger=not settings.is_production,
        ping_timeout=60,
        ping_interval=25
    )

    app.extensions['patternnet.registry'] = registry
    app.extensions['patternnet.settings'] = settings

    # Training jobs being tracked: {job_id: job_info}
    training_jobs: Dict[str, Dict[str, Any]] = {}
    jobs_lock = threading.Lock()

    if reload_saved:
        reload_saved_models(registry, settings.model_dir)

    def pause() -> None:
        """Let other greenlets (HTTP requests, socket pings) run."""
        if settings.async_mode == 'gevent':
            gevent.sleep(0)
        else:
            socketio.sleep(0)

    def body() -> Dict[str, Any]:
        return request.get_json(silent=True) or {}

    # ------------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------------

    @app.errorhandler(ModelNotFoundError)
    def handle_not_found(e):
        logger.warning(str(e))
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(ModelNotTrainedError)
    def handle_not_trained(e):
        return jsonify({'error': str(e)}), 409

    @app.errorhandler(ConfigurationError)
    @app.errorhandler(ShapeMismatchError)
    @app.errorhandler(InsufficientDataError)
    def handle_bad_request(e):
        return jsonify({'error': str(e), 'error_type': type(e).__name__}), 400

    @app.errorhandler(500)
    def handle_internal_error(e):
        original = getattr(e, 'original_exception', None) or e
        logger.error(f"Unhandled error on {request.path}: {original}")
        return jsonify({'error': 'Internal server error'}), 500

    # ------------------------------------------------------------------------
    # Status and catalogue
    # ------------------------------------------------------------------------

    @app.route('/api/status', methods=['GET'])
    def get_status():
        """Return server status, model counts and active training jobs."""
        models = registry.list_models()
        active_statuses = ('pending', 'training')
        with jobs_lock:
            active_training = sum(
                1 for job in training_jobs.values()
                if job.get('status') in active_statuses
            )

        return jsonify({
            'status': 'online',
            'models': len(models),
            'trained_models': sum(1 for m in models if m['trained']),
            'training_jobs': active_training
        }), 200

    @app.route('/api/models', methods=['GET'])
    def list_models():
        """List registered models and models saved to disk but not loaded."""
        in_memory = registry.list_models()
        for info in in_memory:
            info['status'] = 'in_memory'

        in_memory_ids = {info['id'] for info in in_memory}
        saved_only = []
        for info in model_persistence.list_saved_models(settings.model_dir):
            if info['model_id'] not in in_memory_ids:
                info['status'] = 'saved'
                saved_only.append(info)

        return jsonify({'models': in_memory + saved_only}), 200

    @app.route('/api/models', methods=['POST'])
    def register_model():
        """
        Register a model configuration.

        Request body:
            {'model_id': 'xor', 'config': {'type': 'classification',
             'architecture': {...}, 'preprocessing': 'none'}}
        """
        data = body()
        model_id = data.get('model_id') or str(uuid.uuid4())
        config = data.get('config')
        if not isinstance(config, dict):
            return jsonify({'error': "'config' must be an object"}), 400

        info = registry.register_model(model_id, config)
        logger.info(f"Registered model {model_id}")
        return jsonify(info), 201

    @app.route('/api/models/<model_id>', methods=['GET'])
    def get_model(model_id: str):
        info = registry.get_model_info(model_id)
        if info is None:
            return jsonify({'error': 'Model not found'}), 404
        return jsonify(info), 200

    @app.route('/api/models/<model_id>', methods=['DELETE'])
    def delete_model(model_id: str):
        """Delete a model from both memory and disk."""
        deleted_from_memory = registry.delete_model(model_id)
        deleted_from_disk = model_persistence.delete_model(model_id, settings.model_dir)

        if not deleted_from_memory and not deleted_from_disk:
            return jsonify({'error': 'Model not found'}), 404

        return jsonify({
            'model_id': model_id,
            'deleted_from_memory': deleted_from_memory,
            'deleted_from_disk': deleted_from_disk
        }), 200

    @app.route('/api/models/cleanup', methods=['POST'])
    def cleanup_old_models():
        """
        Delete saved models older than the given number of days.

        Request body (optional):
            {'days': 2}  # defaults to 2
        """
        days = body().get('days', 2)
        if not isinstance(days, (int, float)) or days < 0:
            return jsonify({'error': 'days must be a non-negative number'}), 400

        deleted_count = model_persistence.delete_old_models(int(days), settings.model_dir)
        if deleted_count == -1:
            return jsonify({'error': 'Error occurred during cleanup'}), 500

        return jsonify({
            'deleted_count': deleted_count,
            'days': days,
            'message': f'Successfully deleted {deleted_count} model(s) older than {days} day(s)'
        }), 200

    # ------------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------------

    def train_model_task(
        model_id: str,
        job_id: str,
        training_data: Any,
        options: Dict[str, Any]
    ) -> None:
        """
        Train a model and report progress via WebSocket.

        Runs as a background task unless background training is disabled.
        """
        def on_event(event: str, payload: Dict[str, Any]) -> None:
            if payload.get('model_id') != model_id or event != 'training-progress':
                return
            progress = (payload['epoch'] / payload['total_epochs']) * 100
            with jobs_lock:
                training_jobs[job_id]['status'] = 'training'
                training_jobs[job_id]['progress'] = progress
            socketio.emit('training_update', {
                'job_id': job_id,
                'model_id': model_id,
                'epoch': payload['epoch'],
                'total_epochs': payload['total_epochs'],
                'loss': payload['loss'],
                'accuracy': payload['accuracy'],
                'val_loss': payload['val_loss'],
                'val_accuracy': payload['val_accuracy'],
                'progress': progress
            })

        def cancel_requested() -> bool:
            with jobs_lock:
                return training_jobs[job_id].get('cancel_requested', False)

        registry.subscribe(on_event)
        try:
            logger.info(f"Starting training for job {job_id}")
            result = registry.train_model(
                model_id,
                training_data,
                options,
                should_stop=cancel_requested,
                yield_func=pause
            )
        except Exception as e:
            logger.exception(f"Training failed for job {job_id}: {e}")
            result = {'success': False, 'error': str(e)}
        finally:
            registry.unsubscribe(on_event)

        if result['success']:
            with jobs_lock:
                training_jobs[job_id].update({
                    'status': 'cancelled' if result.get('cancelled') else 'completed',
                    'progress': 100,
                    'metrics': result['metrics']
                })
            logger.info(f"Training completed for job {job_id}: {result['metrics']}")
            socketio.emit('training_complete', {
                'job_id': job_id,
                'model_id': model_id,
                'status': training_jobs[job_id]['status'],
                'metrics': result['metrics'],
                'epochs_completed': result['epochs_completed'],
                'progress': 100
            })
        else:
            with jobs_lock:
                training_jobs[job_id].update({
                    'status': 'failed',
                    'error': result['error']
                })
            socketio.emit('training_error', {
                'job_id': job_id,
                'model_id': model_id,
                'status': 'failed',
                'error': result['error']
            })
        pause()

    @app.route('/api/models/<model_id>/train', methods=['POST'])
    def train_model(model_id: str):
        """
        Start training a model.

        Request body:
            {
                'data': {'inputs': [...], 'targets': [...]},
                'options': {'epochs': 100, 'batchSize': 32, 'learningRate': 0.001}
            }

        Returns:
            JSON with job_id, model_id, and status
        """
        if registry.get_model_info(model_id) is None:
            return jsonify({'error': 'Model not found'}), 404

        data = body()
        training_data = data.get('data')
        if training_data is None:
            return jsonify({'error': "'data' is required"}), 400
        options = data.get('options') or {}
        # Reject bad hyperparameters before a job is created
        TrainingOptions.from_dict(options)

        job_id = str(uuid.uuid4())
        with jobs_lock:
            training_jobs[job_id] = {
                'model_id': model_id,
                'status': 'pending',
                'progress': 0,
                'epochs': options.get('epochs')
            }

        logger.info(f"Created training job {job_id} for model {model_id}")

        if settings.background_training:
            socketio.start_background_task(
                train_model_task, model_id, job_id, training_data, options
            )
        else:
            train_model_task(model_id, job_id, training_data, options)

        return jsonify({
            'job_id': job_id,
            'model_id': model_id,
            'status': 'training_started'
        }), 202

    @app.route('/api/training/<job_id>', methods=['GET'])
    def get_training_status(job_id: str):
        with jobs_lock:
            job = training_jobs.get(job_id)
            job = dict(job) if job is not None else None
        if job is None:
            logger.warning(f"Status requested for non-existent job: {job_id}")
            return jsonify({'error': 'Training job not found'}), 404
        return jsonify(job), 200

    @app.route('/api/training/<job_id>/cancel', methods=['POST'])
    def cancel_training(job_id: str):
        """Ask a running job to stop before its next epoch."""
        with jobs_lock:
            job = training_jobs.get(job_id)
            if job is None:
                return jsonify({'error': 'Training job not found'}), 404
            job['cancel_requested'] = True
        return jsonify({'job_id': job_id, 'cancel_requested': True}), 202

    @app.route('/api/models/<model_id>/history_plot', methods=['GET'])
    def get_history_plot(model_id: str):
        history = registry.history(model_id)
        if not history:
            return jsonify({'error': 'Model has no training history'}), 404
        return jsonify({
            'model_id': model_id,
            'image_data': create_history_plot(history, f"Training history: {model_id}")
        }), 200

    # ------------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------------

    @app.route('/api/models/<model_id>/predict', methods=['POST'])
    def predict(model_id: str):
        data = body()
        if 'input' not in data:
            return jsonify({'error': "'input' is required"}), 400
        result = registry.predict(model_id, data['input'])
        return jsonify(result), 200 if result['success'] else 400

    @app.route('/api/models/<model_id>/predict_batch', methods=['POST'])
    def predict_batch(model_id: str):
        inputs = body().get('inputs')
        if not isinstance(inputs, list):
            return jsonify({'error': "'inputs' must be a list"}), 400
        return jsonify({'results': registry.predict_batch(model_id, inputs)}), 200

    @app.route('/api/classify', methods=['POST'])
    def classify():
        data = body()
        if 'input' not in data:
            return jsonify({'error': "'input' is required"}), 400
        result = registry.classify(
            data['input'],
            top_k=data.get('top_k', 3),
            model_id=data.get('model_id', 'classifier')
        )
        return jsonify(result), 200 if result['success'] else 400

    @app.route('/api/anomalies', methods=['POST'])
    def detect_anomalies():
        data = body()
        if not isinstance(data.get('data'), list):
            return jsonify({'error': "'data' must be a list"}), 400
        result = registry.detect_anomalies(
            data['data'],
            threshold=data.get('threshold', 0.1),
            normal_data=data.get('normal_data'),
            options=data.get('options'),
            model_id=data.get('model_id', 'anomaly')
        )
        return jsonify(result), 200 if result['success'] else 400

    @app.route('/api/timeseries', methods=['POST'])
    def predict_time_series():
        data = body()
        if not isinstance(data.get('history'), list):
            return jsonify({'error': "'history' must be a list"}), 400
        result = registry.predict_time_series(
            data['history'],
            steps=data.get('steps', 1),
            model_id=data.get('model_id', 'timeseries')
        )
        return jsonify(result), 200 if result['success'] else 400

    @app.route('/api/cluster', methods=['POST'])
    def cluster():
        data = body()
        if not isinstance(data.get('data'), list):
            return jsonify({'error': "'data' must be a list"}), 400
        result = registry.cluster_data(
            data['data'],
            num_clusters=data.get('num_clusters', 3),
            options=data.get('options'),
            model_id=data.get('model_id', 'clustering')
        )
        return jsonify(result), 200 if result['success'] else 400

    # ------------------------------------------------------------------------
    # Export, import and persistence
    # ------------------------------------------------------------------------

    @app.route('/api/models/<model_id>/export', methods=['GET'])
    def export_model(model_id: str):
        return jsonify(registry.export_model(model_id)), 200

    @app.route('/api/models/import', methods=['POST'])
    def import_model():
        bundle = body()
        if not bundle:
            return jsonify({'error': 'Request body must be a model bundle'}), 400
        return jsonify(registry.import_model(bundle)), 201

    @app.route('/api/models/<model_id>/save', methods=['POST'])
    def save_model(model_id: str):
        bundle = registry.export_model(model_id)
        if not model_persistence.save_model(bundle, settings.model_dir):
            return jsonify({'error': f"Failed to save model '{model_id}'"}), 500
        return jsonify({'model_id': model_id, 'saved': True}), 200

    @app.route('/api/models/<model_id>/load', methods=['POST'])
    def load_model(model_id: str):
        bundle = model_persistence.load_model(model_id, settings.model_dir)
        if bundle is None:
            return jsonify({'error': 'Saved model not found'}), 404
        return jsonify(registry.import_model(bundle)), 200

    return app, socketio


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings)
    app, socketio = create_app(ModelRegistry(), settings, reload_saved=True)

    # Check if running in cloud environment (Railway, etc.)
    is_cloud = bool(os.environ.get('RAILWAY_STATIC_URL') or os.environ.get('PORT'))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {settings.port}")
    else:
        logger.info(f"Starting server at http://localhost:{settings.port}/")

    # Start the server with WebSocket support
    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=settings.port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {settings.port} is already in use.")
            logger.info("You can use: pkill -f 'patternnet.api_server'")
            sys.exit(1)
        else:
            raise


if __name__ == '__main__':
    main()

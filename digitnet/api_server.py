"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit recognition.

This module provides endpoints for:
- Creating and managing neural networks
- Training networks on MNIST with real-time progress updates via WebSockets
- Predicting the digit in a drawn 28x28 pixel grid
- Showing test digits the network gets right or wrong
- Persisting networks to/from SQLite database

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- SQLite for network persistence
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet.matrix import Matrix, ShapeMismatch
from digitnet.mnist_loader import MnistSet, load_mnist, pixels_to_input
from digitnet.network import Network, argmax
from digitnet.training import accuracy as split_accuracy, train_epochs
from digitnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

# ============================================================================
# CONFIGURATION
# ============================================================================

MODEL_DIR = os.getenv('DIGITNET_MODEL_DIR', 'models')
DATA_DIR = os.getenv('MNIST_DATA_DIR', 'data')
CLEANUP_ENABLED = os.getenv('DIGITNET_CLEANUP', '1') != '0'
CLEANUP_DAYS = float(os.getenv('DIGITNET_CLEANUP_DAYS', '2'))
is_production = os.getenv('FLASK_ENV') == 'production'

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# MNIST splits - loaded once at startup, None when the files are missing
training_data: Optional[MnistSet] = None
test_data: Optional[MnistSet] = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_mnist_data() -> None:
    """
    Load the MNIST splits into global variables.

    Called once at startup. Without the dataset the server still creates
    networks and serves predictions; training and examples are unavailable.
    """
    global training_data, test_data

    logger.info(f"Loading MNIST data from {DATA_DIR}...")
    try:
        splits = load_mnist(DATA_DIR)
    except FileNotFoundError as e:
        logger.warning(f"MNIST data not available: {e}")
        return

    training_data = splits['training']
    test_data = splits['test']
    logger.info(
        f"Data loaded: {len(training_data)} training, {len(test_data)} test"
    )


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Called at startup to restore networks that were saved before the
    application was restarted.
    """
    saved_networks = list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        active_networks[network_id] = {
            'network': net,
            'architecture': net_info['architecture'],
            'trained': net_info['trained'],
            'accuracy': net_info['accuracy'],
            'training': False
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


load_mnist_data()
reload_saved_networks()


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Background task that runs immediately on startup, then every 24 hours to:
    - Delete networks older than CLEANUP_DAYS from the database
    - Drop deleted networks from memory
    - Remove completed/failed training jobs from memory
    """
    logger.info("Cleanup task started")

    while True:
        try:
            deleted_count = delete_old_networks(
                days=CLEANUP_DAYS, model_dir=MODEL_DIR
            )

            if deleted_count > 0:
                logger.info(f"Cleanup completed: deleted {deleted_count} network(s)")
                sync_active_networks()
            elif deleted_count == 0:
                logger.info("Cleanup completed: no old networks found to delete")
            else:
                logger.error("Cleanup returned error code")

            cleanup_finished_training_jobs()

            logger.info("Next cleanup scheduled in 24 hours")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            gevent.sleep(3600)


def sync_active_networks() -> None:
    """Remove networks from memory that are no longer in the database."""
    saved_ids = {net['network_id'] for net in list_saved_networks(MODEL_DIR)}
    stale = [
        nid for nid, info in active_networks.items()
        if nid not in saved_ids and not info.get('training')
    ]
    for nid in stale:
        del active_networks[nid]
        logger.info(f"Removed network {nid} from memory (deleted from database)")


def cleanup_finished_training_jobs() -> None:
    """Remove completed or failed training jobs from memory."""
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    Idempotent; does nothing when DIGITNET_CLEANUP=0.
    """
    global _cleanup_task_started

    if _cleanup_task_started or not CLEANUP_ENABLED:
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


start_cleanup_task()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def column_to_list(column: Matrix) -> List[float]:
    """Flatten a column matrix to a list of floats (for JSON)."""
    return [float(row[0]) for row in column]


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _positive_number(value: Any) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and value > 0)


def create_digit_image(column: Matrix, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        column: 784-row image column with values in [0, 1]
        predicted: The digit the network predicted (0-9)
        actual: The correct digit (0-9)

    Returns:
        Base64-encoded PNG image string
    """
    pixels = np.array(column_to_list(column)).reshape(28, 28)

    plt.figure(figsize=(3, 3))
    plt.imshow(pixels, cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and statistics."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training,
        'data_loaded': training_data is not None
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new neural network.

    Request body (optional):
        {
            'layer_sizes': [784, 30, 10],
            'learning_rate': 1.0,
            'batch_size': 1
        }

    Returns:
        JSON with network_id, architecture, options and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes', [784, 30, 10])
    learning_rate = data.get('learning_rate', 1.0)
    batch_size = data.get('batch_size', 1)

    if (not isinstance(layer_sizes, list) or len(layer_sizes) < 2
            or not all(_positive_int(size) for size in layer_sizes)):
        logger.warning(f"Invalid architecture requested: {layer_sizes}")
        return jsonify({
            'error': 'Invalid architecture. Must have at least 2 positive layer sizes.'
        }), 400
    if not _positive_number(learning_rate):
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if not _positive_int(batch_size):
        return jsonify({'error': 'batch_size must be a positive integer'}), 400

    network_id = str(uuid.uuid4())
    net = Network(layer_sizes, learning_rate=learning_rate, batch_size=batch_size)

    active_networks[network_id] = {
        'network': net,
        'architecture': layer_sizes,
        'trained': False,
        'accuracy': None,
        'training': False
    }
    save_network(net, network_id, model_dir=MODEL_DIR, trained=False)

    logger.info(f"Created network {network_id} with architecture {layer_sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': layer_sizes,
        'options': net.options.to_dict(),
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {
            'epochs': 1,
            'batch_size': 32,
            'learning_rate': 1.0,
            'limit': 10000
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if training_data is None or test_data is None:
        return jsonify({'error': 'Training data not available'}), 503

    info = active_networks[network_id]
    if info.get('training'):
        return jsonify({'error': 'Network is already training'}), 409

    net = info['network']
    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', 1)
    batch_size = data.get('batch_size', net.options.batch_size)
    learning_rate = data.get('learning_rate', net.options.learning_rate)
    limit = data.get('limit')

    if not _positive_int(epochs):
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if not _positive_int(batch_size):
        return jsonify({'error': 'batch_size must be a positive integer'}), 400
    if not _positive_number(learning_rate):
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if limit is not None and not _positive_int(limit):
        return jsonify({'error': 'limit must be a positive integer'}), 400

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }
    info['training'] = True

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, batch_size={batch_size}, lr={learning_rate}, "
        f"limit={limit}"
    )

    socketio.start_background_task(
        train_network_task,
        network_id, job_id, epochs, batch_size, learning_rate, limit
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    epochs: int,
    batch_size: int,
    learning_rate: float,
    limit: Optional[int] = None
) -> None:
    """
    Background task that trains a neural network.

    Sends progress updates via WebSocket after every epoch and yields to
    other greenlets between batches, so requests are served while training
    runs and never see a half-applied batch.
    """
    info = active_networks[network_id]
    net = info['network']
    examples_per_epoch = len(training_data) if limit is None else min(limit, len(training_data))

    def on_batch(data: Dict[str, Any]) -> None:
        gevent.sleep(0)

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'examples': data['examples'],
            'batch_size': data['batch_size'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress
        })
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id} ({examples_per_epoch} examples per epoch)")
        training_jobs[job_id]['status'] = 'training'

        net.update_options(batch_size=batch_size, learning_rate=learning_rate)
        train_epochs(
            net,
            training_data,
            epochs,
            limit=limit,
            callback=on_epoch_complete,
            batch_callback=on_batch
        )

        accuracy = split_accuracy(net, test_data)

        info['trained'] = True
        info['accuracy'] = accuracy

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = accuracy
        training_jobs[job_id]['progress'] = 100

        save_network(net, network_id, model_dir=MODEL_DIR, trained=True, accuracy=accuracy)

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        info['training'] = False


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'training' if info.get('training') else 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    in_memory_ids = set(active_networks.keys())
    saved_only = []
    for net in list_saved_networks(MODEL_DIR):
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    info = active_networks.get(network_id)
    if info is not None and info.get('training'):
        return jsonify({'error': 'Network is training'}), 409

    deleted_from_memory = False
    if info is not None:
        del active_networks[network_id]
        deleted_from_memory = True

    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks that are not training from memory and disk."""
    in_memory_ids = [
        nid for nid, info in active_networks.items()
        if not info.get('training')
    ]
    saved_ids = [net['network_id'] for net in list_saved_networks(MODEL_DIR)]
    busy_ids = set(active_networks.keys()) - set(in_memory_ids)
    all_network_ids = [
        nid for nid in set(in_memory_ids + saved_ids) if nid not in busy_ids
    ]

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0

    for network_id in all_network_ids:
        if network_id in active_networks:
            del active_networks[network_id]
            deleted_from_memory_count += 1

        if delete_network(network_id, MODEL_DIR):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count,
        'message': f'Successfully deleted {len(all_network_ids)} network(s)'
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of networks older than specified days.

    Request body (optional):
        {'days': 2}  # defaults to 2

    Returns:
        JSON with deleted_count, days, and message
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', 2)

    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=days, model_dir=MODEL_DIR)

    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    if deleted_count > 0:
        sync_active_networks()

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
    }), 200


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict_digit(network_id: str):
    """
    Predict the digit in a drawn image.

    Request body:
        {'pixels': [[0, 0, 255, ...], ...]}  # 28x28 (or flat) 0-255 values

    Returns:
        JSON with the predicted class, its confidence and all outputs
    """
    if network_id not in active_networks:
        logger.warning(f"Prediction requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    pixels = data.get('pixels')
    if pixels is None:
        return jsonify({'error': 'pixels is required'}), 400

    try:
        x = pixels_to_input(pixels)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    net = active_networks[network_id]['network']
    try:
        output = net.feed_forward(x)
    except ShapeMismatch:
        return jsonify({
            'error': f'Expected {net.layers[0]} pixels, got {len(x)}'
        }), 400

    predicted = argmax(output)

    return jsonify({
        'network_id': network_id,
        'prediction': predicted,
        'confidence': output[predicted][0],
        'network_output': column_to_list(output)
    }), 200


def _find_example(network_id: str, want_correct: bool, max_attempts: int):
    """Search random test examples for a (mis)classified digit."""
    if network_id not in active_networks:
        logger.warning(f"Example requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if test_data is None:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 503

    net = active_networks[network_id]['network']
    data = test_data

    for attempt in range(max_attempts):
        index = int(np.random.randint(0, len(data)))
        x, actual_digit = data.sample(index)

        output = net.feed_forward(x)
        predicted_digit = argmax(output)

        if (predicted_digit == actual_digit) == want_correct:
            logger.debug(f"Found example on attempt {attempt + 1}")

            return jsonify({
                'network_id': network_id,
                'example_index': index,
                'predicted_digit': predicted_digit,
                'actual_digit': actual_digit,
                'image_data': create_digit_image(x, predicted_digit, actual_digit),
                'network_output': column_to_list(output)
            }), 200

    kind = 'successful' if want_correct else 'unsuccessful'
    logger.warning(f"No {kind} example found after {max_attempts} attempts")
    return jsonify({
        'error': f'No {kind} example found after {max_attempts} attempts'
    }), 404


@app.route('/api/networks/<network_id>/successful_example', methods=['GET'])
def get_successful_example(network_id: str):
    """Return a random test digit the network classifies correctly."""
    return _find_example(network_id, want_correct=True, max_attempts=100)


@app.route('/api/networks/<network_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(network_id: str):
    """Return a random test digit the network gets wrong."""
    return _find_example(network_id, want_correct=False, max_attempts=200)


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> None:
    """Run the server with WebSocket support."""
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise


if __name__ == '__main__':
    main()

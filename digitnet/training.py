"""
training.py
~~~~~~~~~~~

Multi-epoch training and evaluation on MNIST splits.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from digitnet.mnist_loader import MnistSet
from digitnet.network import Network

logger = logging.getLogger(__name__)


def train_epochs(
    network: Network,
    split: MnistSet,
    epochs: int,
    batch_growth: int = 2,
    limit: Optional[int] = None,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    batch_callback: Optional[Callable[[Dict[str, Any]], None]] = None
) -> None:
    """
    Train a network for several passes over a split.

    Each epoch opens fresh streams over the split. After every epoch the
    batch size is multiplied by ``batch_growth``.

    Args:
        network: Network to train in place
        split: Training examples
        epochs: Number of passes
        batch_growth: Batch size multiplier applied after each epoch
        limit: Use only the first ``limit`` examples of the split
        callback: Called after each epoch with ``epoch``, ``total_epochs``,
            ``examples``, ``batch_size`` and ``elapsed_time``
        batch_callback: Passed to ``Network.learn`` for per-batch updates
    """
    start = time.time()
    for epoch in range(1, epochs + 1):
        batch_size = network.options.batch_size
        examples = network.learn(
            split.image_stream(limit),
            split.label_stream(limit),
            callback=batch_callback
        )
        elapsed = time.time() - start
        logger.info(
            f"Epoch {epoch}/{epochs} complete: {examples} examples, "
            f"batch_size={batch_size}, {elapsed:.1f}s elapsed"
        )
        if callback is not None:
            callback({
                'epoch': epoch,
                'total_epochs': epochs,
                'examples': examples,
                'batch_size': batch_size,
                'elapsed_time': elapsed,
            })
        network.update_options(batch_size=batch_size * batch_growth)


def accuracy(
    network: Network,
    split: MnistSet,
    limit: Optional[int] = None
) -> float:
    """Fraction of the split's examples the network classifies correctly."""
    correct, total = network.evaluate(
        split.image_stream(limit), split.label_stream(limit)
    )
    if total == 0:
        return 0.0
    return correct / total


def export_samples(split: MnistSet, limit: int = 100) -> Dict[str, List]:
    """
    Collect the first ``limit`` examples of a split as plain matrices.

    Returns:
        ``{'images': [...], 'labels': [...]}`` with image columns and
        one-hot label columns, ready for JSON
    """
    images = split.image_stream(limit)
    labels = split.label_stream(limit)
    result: Dict[str, List] = {'images': [], 'labels': []}
    while images.has_next() and labels.has_next():
        result['images'].append(images.next())
        result['labels'].append(labels.next())
    return result

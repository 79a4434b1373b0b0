"""
network.py
~~~~~~~~~~

A feed-forward neural network trained with back-propagation.

The network is a stack of fully connected sigmoid layers. Training pulls
(input, expected output) pairs from two sample streams, computes one
gradient per example and applies buffered gradients in batches. Each
example's gradient is scaled by its own squared error and the learning
rate; gradients inside a batch are applied one after another, not
averaged.

Weights and biases are plain Python matrices (see ``digitnet.matrix``).
"""

import copy
import logging
import math
import random
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from tqdm import tqdm

from digitnet.matrix import (
    Matrix,
    activation,
    activation_derivative,
    add,
    create_matrix,
    elementwise_multiply,
    mean_squared_error,
    multiply,
    scalar_multiply,
    transpose,
)
from digitnet.streams import ArrayStream, SampleStream

logger = logging.getLogger(__name__)

StreamLike = Union[SampleStream, Sequence[Matrix]]


@dataclass(frozen=True)
class NetworkOptions:
    """Training hyperparameters."""

    learning_rate: float = 1.0
    batch_size: int = 1
    progress: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def create_weights(layers: Sequence[int]) -> List[Matrix]:
    """
    One weight matrix per layer transition.

    Matrix ``i`` has ``layers[i + 1]`` rows and ``layers[i]`` columns.
    Cells are standard normal samples scaled by ``1 / sqrt(layers[i])``.
    """
    weights = []
    for from_size, to_size in zip(layers[:-1], layers[1:]):
        scale = 1.0 / math.sqrt(from_size)
        weights.append(create_matrix(
            to_size, from_size, lambda y, x: random.gauss(0.0, 1.0) * scale
        ))
    return weights


def create_biases(layers: Sequence[int]) -> List[Matrix]:
    """One zero column per layer transition, ``layers[i + 1]`` rows high."""
    return [create_matrix(size, 1, lambda y, x: 0.0) for size in layers[1:]]


def _as_stream(data: StreamLike) -> SampleStream:
    if isinstance(data, SampleStream):
        return data
    return ArrayStream(list(data))


def argmax(column: Matrix) -> int:
    """Row of the largest cell in a column; ties go to the lowest row."""
    best = 0
    for i in range(1, len(column)):
        if column[i][0] > column[best][0]:
            best = i
    return best


class Network:
    """
    Fully connected sigmoid network.

    Example:
        >>> net = Network([784, 30, 10], learning_rate=0.5, batch_size=32)
        >>> net.learn(images, labels)
        >>> output = net.feed_forward(image)
    """

    def __init__(self, layers: Sequence[int], **options: Any):
        """
        Create a network with random weights and zero biases.

        Args:
            layers: Layer sizes, input layer first
            **options: Any ``NetworkOptions`` field
        """
        self.layers: List[int] = list(layers)
        self.options = NetworkOptions(**options)
        self.weights: List[Matrix] = create_weights(self.layers)
        self.biases: List[Matrix] = create_biases(self.layers)

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> 'Network':
        """Build a network from a ``serialize()`` snapshot."""
        network = cls([])
        network.load(snapshot)
        return network

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def serialize(self) -> Dict[str, Any]:
        """
        Return a self-contained snapshot of the network.

        The snapshot holds only lists, numbers and booleans and shares no
        references with the live network.
        """
        return copy.deepcopy({
            'layers': self.layers,
            'weights': self.weights,
            'biases': self.biases,
            'options': self.options.to_dict(),
        })

    def load(self, snapshot: Dict[str, Any]) -> None:
        """
        Replace layers, weights, biases and options with a snapshot's.

        The snapshot is trusted; shapes are not checked.
        """
        snapshot = copy.deepcopy(snapshot)
        self.layers = snapshot['layers']
        self.weights = snapshot['weights']
        self.biases = snapshot['biases']
        self.options = NetworkOptions(**snapshot['options'])

    def update_options(self, **options: Any) -> None:
        """Overwrite the given option fields, keeping the others."""
        self.options = replace(self.options, **options)

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def feed_forward(self, a: Matrix) -> Matrix:
        """Return the network's output column for input column ``a``."""
        for w, b in zip(self.weights, self.biases):
            a = activation(add(multiply(w, a), b))
        return a

    def predict(self, x: Matrix) -> Tuple[int, float]:
        """
        Return ``(index, confidence)`` of the strongest output neuron.

        Ties go to the lowest index.
        """
        output = self.feed_forward(x)
        index = argmax(output)
        return index, output[index][0]

    def get_error(self, x: Matrix, y: Matrix) -> float:
        """Mean squared error of the network's output for one example."""
        output = self.feed_forward(x)
        return mean_squared_error(add(y, scalar_multiply(output, -1.0)))

    def evaluate(self, inputs: StreamLike, labels: StreamLike) -> Tuple[int, int]:
        """
        Count correct classifications over two streams.

        An example is correct when the strongest output neuron matches the
        strongest cell of its label.

        Returns:
            ``(correct, total)``
        """
        inputs = _as_stream(inputs)
        labels = _as_stream(labels)
        correct = 0
        total = 0
        while inputs.has_next() and labels.has_next():
            x = inputs.next()
            y = labels.next()
            if argmax(self.feed_forward(x)) == argmax(y):
                correct += 1
            total += 1
        return correct, total

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def learn(
        self,
        inputs: StreamLike,
        outputs: StreamLike,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None
    ) -> int:
        """
        Train on paired examples until either stream runs out.

        Gradients are buffered and applied whenever the example index is a
        multiple of ``batch_size`` (index 0 included), then once more for
        whatever is left at the end.

        Args:
            inputs: Input columns, as a stream or a list
            outputs: Expected output columns, as a stream or a list
            callback: Called after every applied batch with a dict holding
                ``examples``, ``total``, ``batch`` and ``error`` (the mean
                squared error of the applied batch)

        Returns:
            Number of examples consumed

        Raises:
            ShapeMismatch: If an example does not fit the topology
        """
        inputs = _as_stream(inputs)
        outputs = _as_stream(outputs)
        total = min(len(inputs), len(outputs))
        batch_size = self.options.batch_size

        logger.info(
            f"Learning from {total} examples: layers={self.layers}, "
            f"batch_size={batch_size}, "
            f"learning_rate={self.options.learning_rate}"
        )

        bar = tqdm(total=total, unit='ex') if self.options.progress else None

        weight_batch: List[List[Matrix]] = []
        bias_batch: List[List[Matrix]] = []
        error_batch: List[float] = []

        def flush(seen: int) -> None:
            size = len(error_batch)
            mean_error = sum(error_batch) / size
            self.apply_batch(weight_batch, bias_batch, error_batch)
            logger.debug(
                f"Applied batch of {size} at example {seen}: "
                f"mean error {mean_error:.6f}"
            )
            if callback is not None:
                callback({
                    'examples': seen,
                    'total': total,
                    'batch': size,
                    'error': mean_error,
                })
            weight_batch.clear()
            bias_batch.clear()
            error_batch.clear()

        i = 0
        try:
            while inputs.has_next() and outputs.has_next():
                x = inputs.next()
                y = outputs.next()
                weight_updates, bias_updates, error = self.backprop(x, y)
                weight_batch.append(weight_updates)
                bias_batch.append(bias_updates)
                error_batch.append(error)
                if i % batch_size == 0:
                    flush(i + 1)
                if bar is not None:
                    bar.update(1)
                i += 1

            if error_batch:
                flush(i)
        finally:
            if bar is not None:
                bar.close()

        logger.info(f"Finished learning from {i} examples")
        return i

    def apply_batch(
        self,
        weight_updates: List[List[Matrix]],
        bias_updates: List[List[Matrix]],
        errors: List[float]
    ) -> None:
        """
        Apply buffered gradients to the weights and biases.

        Example ``u`` moves every layer by its gradient times
        ``errors[u] * learning_rate``. This is the only method that
        changes weights or biases during training.
        """
        rate = self.options.learning_rate
        for weights_u, biases_u, error in zip(weight_updates, bias_updates, errors):
            step = error * rate
            for layer, (dw, db) in enumerate(zip(weights_u, biases_u)):
                self.weights[layer] = add(
                    self.weights[layer], scalar_multiply(dw, step)
                )
                self.biases[layer] = add(
                    self.biases[layer], scalar_multiply(db, step)
                )

    def backprop(
        self,
        x: Matrix,
        y: Matrix
    ) -> Tuple[List[Matrix], List[Matrix], float]:
        """
        Compute the gradient for a single example.

        The error is taken as ``y - output``, so adding the returned
        updates to the weights moves the output towards ``y``.

        Returns:
            ``(weight_updates, bias_updates, error)`` where the updates are
            per layer and ``error`` is the example's mean squared error
        """
        layer_inputs: List[Matrix] = []
        zs: List[Matrix] = []
        a = x
        for w, b in zip(self.weights, self.biases):
            layer_inputs.append(a)
            z = add(multiply(w, a), b)
            zs.append(z)
            a = activation(z)

        error = add(y, scalar_multiply(a, -1.0))
        loss = mean_squared_error(error)

        count = len(self.weights)
        weight_updates: List[Matrix] = [[] for _ in range(count)]
        bias_updates: List[Matrix] = [[] for _ in range(count)]
        for layer in range(count - 1, -1, -1):
            delta = elementwise_multiply(activation_derivative(zs[layer]), error)
            bias_updates[layer] = delta
            weight_updates[layer] = multiply(delta, transpose(layer_inputs[layer]))
            error = multiply(transpose(self.weights[layer]), delta)

        return weight_updates, bias_updates, loss

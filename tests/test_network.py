"""
test_network.py
~~~~~~~~~~~~~~~

Unit tests for the network: initialization, forward pass, gradients,
batching, options and serialization.
"""

import math
import random

import pytest

from digitnet.matrix import ShapeMismatch, shape
from digitnet.network import Network, NetworkOptions, argmax
from digitnet.streams import ArrayStream


@pytest.fixture(autouse=True)
def seeded():
    random.seed(1234)


def random_column(height):
    return [[random.random()] for _ in range(height)]


class CountingNetwork(Network):
    """Network that records the size of every applied batch."""

    def __init__(self, layers, **options):
        super().__init__(layers, **options)
        self.applied = []

    def apply_batch(self, weight_updates, bias_updates, errors):
        self.applied.append(len(errors))
        super().apply_batch(weight_updates, bias_updates, errors)


@pytest.mark.unit
class TestInitialization:

    def test_weight_shapes(self):
        network = Network([3, 5, 8, 10, 100])

        assert len(network.weights) == 4
        # rows = next layer, columns = previous layer
        assert [shape(w) for w in network.weights] == [(5, 3), (8, 5), (10, 8), (100, 10)]
        for w in network.weights:
            assert len({len(row) for row in w}) == 1

    def test_bias_shapes(self):
        network = Network([3, 5, 8, 10, 100])

        assert len(network.biases) == 4
        assert [shape(b) for b in network.biases] == [(5, 1), (8, 1), (10, 1), (100, 1)]

    def test_biases_are_zero(self):
        network = Network([2, 3, 10])

        for bias in network.biases:
            assert all(cell == 0 for row in bias for cell in row)

    def test_weights_are_normal(self):
        network = Network([50, 50, 50])

        cells = [cell for w in network.weights for row in w for cell in row]
        assert all(math.isfinite(cell) and cell != 0 for cell in cells)
        assert all(-5 < cell < 5 for cell in cells)
        assert abs(sum(cells) / len(cells)) < 0.05

    def test_weights_scaled_by_fan_in(self):
        network = Network([400, 400])

        cells = [cell for row in network.weights[0] for cell in row]
        variance = sum(c * c for c in cells) / len(cells)
        assert variance == pytest.approx(1 / 400, rel=0.1)

    def test_default_options(self):
        network = Network([2, 1])

        assert network.options == NetworkOptions(learning_rate=1.0, batch_size=1, progress=False)

    def test_options_from_constructor(self):
        network = Network([2, 1], learning_rate=0.5, batch_size=5)

        assert network.options.learning_rate == 0.5
        assert network.options.batch_size == 5
        assert network.options.progress is False

    def test_single_layer_has_no_transitions(self):
        network = Network([4])

        assert network.weights == []
        assert network.biases == []


@pytest.mark.unit
class TestFeedForward:

    def test_output_shape_and_range(self):
        network = Network([4, 6, 3])

        output = network.feed_forward([[1.0], [-2.0], [0.5], [3.0]])

        assert shape(output) == (3, 1)
        assert all(0 < row[0] < 1 for row in output)

    def test_feeds_forward_something_sensible(self):
        network = Network([1000, 500, 2])

        result = network.feed_forward(random_column(1000))

        assert 0.05 < result[0][0] < 0.95
        assert 0.05 < result[1][0] < 0.95

    def test_known_weights(self):
        network = Network([2, 1])
        network.weights = [[[1.0, -1.0]]]
        network.biases = [[[0.5]]]

        output = network.feed_forward([[2.0], [1.0]])

        assert output[0][0] == pytest.approx(1 / (1 + math.exp(-1.5)))

    def test_does_not_modify_network(self):
        network = Network([3, 2])
        snapshot = network.serialize()

        network.feed_forward(random_column(3))

        assert network.serialize() == snapshot

    def test_wrong_input_height(self):
        network = Network([3, 2])

        with pytest.raises(ShapeMismatch):
            network.feed_forward(random_column(2))

    def test_empty_topology_passes_input_through(self):
        network = Network([])
        x = [[0.3], [0.7]]

        assert network.feed_forward(x) == x


@pytest.mark.unit
class TestPredictAndEvaluate:

    @pytest.fixture
    def sorter(self):
        network = Network([2, 2])
        network.weights = [[[10.0, -10.0], [-10.0, 10.0]]]
        network.biases = [[[0.0], [0.0]]]
        return network

    def test_predict(self, sorter):
        index, confidence = sorter.predict([[1.0], [0.0]])

        assert index == 0
        assert confidence == pytest.approx(1 / (1 + math.exp(-10)))
        assert sorter.predict([[0.0], [1.0]])[0] == 1

    def test_predict_tie_goes_to_first(self, sorter):
        assert sorter.predict([[0.5], [0.5]])[0] == 0

    @pytest.mark.parametrize("column, expected", [
        ([[0.1], [0.9], [0.3]], 1),
        ([[0.7], [0.2], [0.7]], 0),
        ([[0.2], [0.8], [0.8]], 1),
        ([[0.4]], 0),
    ])
    def test_argmax_first_maximum_wins(self, column, expected):
        assert argmax(column) == expected

    def test_evaluate(self, sorter):
        inputs = [[[1.0], [0.0]], [[0.0], [1.0]], [[1.0], [0.0]]]
        labels = [[[1.0], [0.0]], [[0.0], [1.0]], [[0.0], [1.0]]]

        assert sorter.evaluate(inputs, labels) == (2, 3)

    def test_get_error(self, sorter):
        output = sorter.feed_forward([[1.0], [0.0]])
        expected = ((1 - output[0][0]) ** 2 + output[1][0] ** 2) / 2

        assert sorter.get_error([[1.0], [0.0]], [[1.0], [0.0]]) == pytest.approx(expected)


@pytest.mark.unit
class TestBackprop:

    def test_gradient_shapes(self):
        network = Network([3, 4, 2])

        weight_updates, bias_updates, error = network.backprop(
            random_column(3), [[1.0], [0.0]]
        )

        assert [shape(w) for w in weight_updates] == [shape(w) for w in network.weights]
        assert [shape(b) for b in bias_updates] == [shape(b) for b in network.biases]
        assert error >= 0

    def test_error_matches_get_error(self):
        network = Network([3, 4, 2])
        x = random_column(3)
        y = [[0.0], [1.0]]

        _, _, error = network.backprop(x, y)

        assert error == pytest.approx(network.get_error(x, y))

    def test_updates_are_negative_gradient_of_half_squared_error(self):
        network = Network([3, 4, 2])
        x = random_column(3)
        y = [[1.0], [0.0]]

        def loss():
            output = network.feed_forward(x)
            return 0.5 * sum((t[0] - o[0]) ** 2 for t, o in zip(y, output))

        weight_updates, bias_updates, _ = network.backprop(x, y)
        h = 1e-6

        for layer in range(2):
            for row in range(len(network.weights[layer])):
                for col in range(len(network.weights[layer][row])):
                    original = network.weights[layer][row][col]
                    network.weights[layer][row][col] = original + h
                    up = loss()
                    network.weights[layer][row][col] = original - h
                    down = loss()
                    network.weights[layer][row][col] = original
                    numeric = (up - down) / (2 * h)
                    assert weight_updates[layer][row][col] == pytest.approx(-numeric, abs=1e-6)

                original = network.biases[layer][row][0]
                network.biases[layer][row][0] = original + h
                up = loss()
                network.biases[layer][row][0] = original - h
                down = loss()
                network.biases[layer][row][0] = original
                numeric = (up - down) / (2 * h)
                assert bias_updates[layer][row][0] == pytest.approx(-numeric, abs=1e-6)

    def test_backprop_does_not_modify_network(self):
        network = Network([3, 4, 2])
        snapshot = network.serialize()

        network.backprop(random_column(3), [[1.0], [0.0]])

        assert network.serialize() == snapshot

    def test_wrong_output_height(self):
        network = Network([3, 2])

        with pytest.raises(ShapeMismatch):
            network.backprop(random_column(3), [[1.0]])


@pytest.mark.unit
class TestApplyBatch:

    def test_updates_are_error_weighted_and_summed(self):
        network = Network([1, 1], learning_rate=2.0)
        network.weights = [[[0.5]]]
        network.biases = [[[0.0]]]

        network.apply_batch(
            [[[[2.0]]], [[[1.0]]]],
            [[[[1.0]]], [[[3.0]]]],
            [0.5, 0.25]
        )

        # 0.5 + 2 * (0.5 * 2) + 1 * (0.25 * 2)
        assert network.weights == [[[3.0]]]
        # 0 + 1 * (0.5 * 2) + 3 * (0.25 * 2)
        assert network.biases == [[[2.5]]]

    def test_zero_error_changes_nothing(self):
        network = Network([2, 2])
        snapshot = network.serialize()
        weight_updates, bias_updates, _ = network.backprop(random_column(2), [[1.0], [0.0]])

        network.apply_batch([weight_updates], [bias_updates], [0.0])

        assert network.serialize() == snapshot

    def test_single_step_reduces_error(self):
        network = Network([2, 3, 1])
        x = [[0.5], [0.2]]
        y = [[1.0]]
        before = network.get_error(x, y)

        network.learn([x], [y])

        assert network.get_error(x, y) < before


@pytest.mark.unit
class TestLearn:

    @pytest.mark.parametrize("count,batch_size,expected", [
        (7, 5, [1, 5, 1]),
        (6, 5, [1, 5]),
        (7, 3, [1, 3, 3]),
        (4, 1, [1, 1, 1, 1]),
        (3, 10, [1, 2]),
        (1, 5, [1]),
    ])
    def test_batch_boundaries(self, count, batch_size, expected):
        network = CountingNetwork([2, 2], batch_size=batch_size)
        inputs = [random_column(2) for _ in range(count)]
        outputs = [[[1.0], [0.0]] for _ in range(count)]

        consumed = network.learn(inputs, outputs)

        assert consumed == count
        assert network.applied == expected

    def test_empty_streams_apply_nothing(self):
        network = CountingNetwork([2, 2])

        assert network.learn([], []) == 0
        assert network.applied == []

    def test_stops_at_shorter_stream(self):
        network = CountingNetwork([2, 2], batch_size=2)
        inputs = ArrayStream([random_column(2) for _ in range(5)])
        outputs = ArrayStream([[[0.0], [1.0]] for _ in range(3)])

        assert network.learn(inputs, outputs) == 3
        assert network.applied == [1, 2]

    def test_respects_stream_limit(self):
        network = CountingNetwork([2, 2], batch_size=2)
        inputs = ArrayStream([random_column(2) for _ in range(10)])
        outputs = ArrayStream([[[0.0], [1.0]] for _ in range(10)])
        inputs.limit(4)
        outputs.limit(4)

        assert network.learn(inputs, outputs) == 4
        assert network.applied == [1, 2, 1]

    def test_callback_reports_batches(self):
        network = Network([2, 2], batch_size=5)
        reports = []

        network.learn(
            [random_column(2) for _ in range(7)],
            [[[1.0], [0.0]] for _ in range(7)],
            callback=reports.append
        )

        assert [r['examples'] for r in reports] == [1, 6, 7]
        assert [r['batch'] for r in reports] == [1, 5, 1]
        assert all(r['total'] == 7 for r in reports)
        assert all(r['error'] >= 0 for r in reports)

    def test_progress_bar(self):
        network = Network([2, 2], progress=True)

        assert network.learn(
            [random_column(2) for _ in range(3)],
            [[[1.0], [0.0]] for _ in range(3)]
        ) == 3

    def test_shape_error_aborts_learning(self):
        network = CountingNetwork([2, 2], batch_size=5)
        inputs = [random_column(2), random_column(2), random_column(3)]
        outputs = [[[1.0], [0.0]]] * 3

        with pytest.raises(ShapeMismatch):
            network.learn(inputs, outputs)

        # only the index-0 batch was applied before the failure
        assert network.applied == [1]


@pytest.mark.unit
class TestOptionsAndSerialization:

    def test_update_options(self):
        network = Network([2, 5, 5, 1], learning_rate=1, batch_size=5)

        network.update_options(learning_rate=5, batch_size=50, progress=True)

        assert network.options.batch_size == 50
        assert network.options.learning_rate == 5
        assert network.options.progress is True

    def test_update_options_keeps_unspecified_fields(self):
        network = Network([2, 1], progress=True)

        network.update_options(batch_size=50, learning_rate=5)

        assert network.options.progress is True
        assert network.options.batch_size == 50

    def test_update_options_rejects_unknown_fields(self):
        network = Network([2, 1])

        with pytest.raises(TypeError):
            network.update_options(momentum=0.9)

    def test_serialize_and_load(self):
        network = Network([2, 5, 5, 1], learning_rate=1, batch_size=5)
        serial = network.serialize()

        loaded = Network([])
        loaded.load(serial)

        assert loaded.layers == network.layers
        assert loaded.weights == network.weights
        assert loaded.biases == network.biases
        assert loaded.options == network.options

    def test_snapshot_contents(self):
        network = Network([2, 1], batch_size=3)

        serial = network.serialize()

        assert set(serial) == {'layers', 'weights', 'biases', 'options'}
        assert serial['options'] == {'learning_rate': 1.0, 'batch_size': 3, 'progress': False}

    def test_snapshot_is_independent(self):
        network = Network([2, 2])
        serial = network.serialize()

        serial['weights'][0][0][0] = 99.0
        serial['layers'].append(7)

        assert network.weights[0][0][0] != 99.0
        assert network.layers == [2, 2]

    def test_load_does_not_share_snapshot(self):
        serial = Network([2, 2]).serialize()
        loaded = Network.from_snapshot(serial)

        loaded.learn([[[0.1], [0.9]]], [[[1.0], [0.0]]])

        assert loaded.weights != serial['weights']

    def test_load_replaces_everything(self):
        network = Network([4, 3, 2], batch_size=7)
        other = Network([2, 1], learning_rate=0.25)

        network.load(other.serialize())

        assert network.serialize() == other.serialize()


@pytest.mark.slow
@pytest.mark.integration
def test_can_learn():
    """Learn whether the first of two numbers is the larger one."""
    network = Network([2, 5, 5, 1], learning_rate=1, batch_size=5)
    inputs = [random_column(2) for _ in range(100000)]
    outputs = [[[1.0]] if x[0][0] > x[1][0] else [[0.0]] for x in inputs]

    network.learn(inputs, outputs)

    result1 = network.feed_forward([[0.6], [0.45]])
    result2 = network.feed_forward([[0.2], [0.8]])

    assert 0.95 < result1[0][0] <= 1
    assert 0 <= result2[0][0] < 0.05

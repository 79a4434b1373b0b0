"""
test_matrix.py
~~~~~~~~~~~~~~

Unit tests for the matrix primitives.
"""

import math

import pytest

from digitnet.matrix import (
    ShapeMismatch,
    activation,
    activation_derivative,
    add,
    create_matrix,
    elementwise_multiply,
    mean_squared_error,
    multiply,
    scalar_multiply,
    shape,
    sigmoid,
    transpose,
)


@pytest.fixture
def a():
    return [[1.0, 2.0, 3.0],
            [4.0, 5.0, 6.0]]


@pytest.fixture
def b():
    return [[7.0, 8.0],
            [9.0, 10.0],
            [11.0, 12.0]]


@pytest.mark.unit
class TestShapes:

    def test_create_matrix_fills_by_row_and_column(self):
        m = create_matrix(2, 3, lambda y, x: 10 * y + x)
        assert m == [[0, 1, 2], [10, 11, 12]]

    def test_shape(self, a, b):
        assert shape(a) == (2, 3)
        assert shape(b) == (3, 2)
        assert shape([]) == (0, 0)

    def test_transpose(self, a):
        assert transpose(a) == [[1.0, 4.0], [2.0, 5.0], [3.0, 6.0]]

    def test_double_transpose_is_identity(self, a, b):
        assert transpose(transpose(a)) == a
        assert transpose(transpose(b)) == b
        column = [[1.0], [2.0], [3.0]]
        assert transpose(transpose(column)) == column


@pytest.mark.unit
class TestArithmetic:

    def test_multiply(self, a, b):
        assert multiply(a, b) == [[58.0, 64.0], [139.0, 154.0]]

    def test_multiply_by_column(self, a):
        assert multiply(a, [[1.0], [0.0], [-1.0]]) == [[-2.0], [-2.0]]

    def test_multiply_shape_mismatch(self, a):
        with pytest.raises(ShapeMismatch) as exc_info:
            multiply(a, a)
        assert exc_info.value.shapes == ((2, 3), (2, 3))

    def test_shape_mismatch_is_value_error(self, a):
        with pytest.raises(ValueError):
            multiply(a, [[1.0]])

    def test_add(self, a):
        assert add(a, a) == [[2.0, 4.0, 6.0], [8.0, 10.0, 12.0]]

    def test_add_is_commutative(self, a):
        other = [[0.5, -1.0, 2.5], [3.0, 0.0, -7.25]]
        assert add(a, other) == add(other, a)

    def test_add_shape_mismatch(self, a, b):
        with pytest.raises(ShapeMismatch):
            add(a, b)

    def test_add_row_vs_column_mismatch(self):
        with pytest.raises(ShapeMismatch):
            add([[1.0, 2.0]], [[1.0], [2.0]])

    def test_elementwise_multiply(self, a):
        assert elementwise_multiply(a, a) == [[1.0, 4.0, 9.0], [16.0, 25.0, 36.0]]

    def test_elementwise_multiply_shape_mismatch(self, a, b):
        with pytest.raises(ShapeMismatch):
            elementwise_multiply(a, b)

    def test_scalar_multiply(self, a):
        assert scalar_multiply(a, -2) == [[-2.0, -4.0, -6.0], [-8.0, -10.0, -12.0]]

    def test_operations_do_not_mutate_operands(self, a, b):
        before = [row[:] for row in a]
        multiply(a, b)
        add(a, a)
        scalar_multiply(a, 3)
        transpose(a)
        assert a == before


@pytest.mark.unit
class TestActivation:

    def test_sigmoid_values(self):
        assert sigmoid(0) == 0.5
        assert sigmoid(2) == pytest.approx(1 / (1 + math.exp(-2)))
        assert sigmoid(-2) == pytest.approx(1 / (1 + math.exp(2)))

    def test_sigmoid_saturates_without_overflow(self):
        assert sigmoid(1000) == 1.0
        assert sigmoid(-1000) == 0.0

    def test_activation_is_elementwise(self):
        result = activation([[0.0, 1.0], [-1.0, 3.0]])
        assert result == [[sigmoid(0.0), sigmoid(1.0)], [sigmoid(-1.0), sigmoid(3.0)]]

    def test_derivative_uses_pre_activation(self):
        z = [[0.0], [2.0], [-3.0]]
        result = activation_derivative(z)
        assert result[0][0] == 0.25
        for (value,), (expected_z,) in zip(result[1:], z[1:]):
            s = sigmoid(expected_z)
            assert value == pytest.approx(s * (1 - s))

    def test_derivative_is_zero_when_saturated(self):
        assert activation_derivative([[1000.0], [-1000.0]]) == [[0.0], [0.0]]


@pytest.mark.unit
def test_mean_squared_error():
    assert mean_squared_error([[1.0], [-2.0], [3.0], [0.0]]) == pytest.approx(14 / 4)
    assert mean_squared_error([[0.0]]) == 0.0

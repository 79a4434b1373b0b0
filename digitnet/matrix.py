"""
matrix.py
~~~~~~~~~

Dense matrix primitives for the network, written in plain Python.

A matrix is a list of rows, each row a list of floats, addressed
``matrix[row][column]``. Column vectors (one column, many rows) carry
activations and errors through the network.
"""

import math
from typing import Callable, List, Tuple

Matrix = List[List[float]]


class ShapeMismatch(ValueError):
    """Raised when operand shapes violate an operation's precondition."""

    def __init__(self, operation: str, a: Matrix, b: Matrix):
        self.operation = operation
        self.shapes = (shape(a), shape(b))
        super().__init__(
            f"{operation}: incompatible shapes {self.shapes[0]} "
            f"and {self.shapes[1]}"
        )


def create_matrix(
    rows: int,
    cols: int,
    fill: Callable[[int, int], float]
) -> Matrix:
    """
    Build a ``rows`` x ``cols`` matrix.

    Args:
        rows: Number of rows (height)
        cols: Number of columns (width)
        fill: Called as ``fill(row, col)`` for every cell

    Returns:
        The new matrix
    """
    return [[fill(y, x) for x in range(cols)] for y in range(rows)]


def shape(a: Matrix) -> Tuple[int, int]:
    """Return ``(rows, columns)`` of a matrix."""
    if not a:
        return (0, 0)
    return (len(a), len(a[0]))


def multiply(a: Matrix, b: Matrix) -> Matrix:
    """
    Matrix product ``a . b``.

    Raises:
        ShapeMismatch: If the width of ``a`` differs from the height of ``b``
    """
    if shape(a)[1] != len(b):
        raise ShapeMismatch("multiply", a, b)
    columns = list(zip(*b))
    return [
        [sum(x * y for x, y in zip(row, col)) for col in columns]
        for row in a
    ]


def add(a: Matrix, b: Matrix) -> Matrix:
    """Elementwise sum of two matrices of identical shape."""
    if shape(a) != shape(b):
        raise ShapeMismatch("add", a, b)
    return [[x + y for x, y in zip(ra, rb)] for ra, rb in zip(a, b)]


def elementwise_multiply(a: Matrix, b: Matrix) -> Matrix:
    """Hadamard product of two matrices of identical shape."""
    if shape(a) != shape(b):
        raise ShapeMismatch("elementwise_multiply", a, b)
    return [[x * y for x, y in zip(ra, rb)] for ra, rb in zip(a, b)]


def scalar_multiply(a: Matrix, scalar: float) -> Matrix:
    return [[x * scalar for x in row] for row in a]


def transpose(a: Matrix) -> Matrix:
    return [list(col) for col in zip(*a)]


def sigmoid(z: float) -> float:
    """
    Logistic function ``1 / (1 + e^-z)``.

    Evaluated from the side that keeps ``exp`` bounded so that strongly
    saturated inputs return 0.0 or 1.0 instead of overflowing.
    """
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    e = math.exp(z)
    return e / (1.0 + e)


def activation(a: Matrix) -> Matrix:
    """Apply the sigmoid to every cell."""
    return [[sigmoid(z) for z in row] for row in a]


def activation_derivative(a: Matrix) -> Matrix:
    """
    Sigmoid derivative ``s(z) * (1 - s(z))`` for every cell.

    ``a`` holds pre-activation values ``z``, not sigmoid outputs.
    """
    result = []
    for row in a:
        out = []
        for z in row:
            s = sigmoid(z)
            out.append(s * (1.0 - s))
        result.append(out)
    return result


def mean_squared_error(error: Matrix) -> float:
    """Sum of squared cells divided by the number of rows."""
    total = sum(x * x for row in error for x in row)
    return total / len(error)

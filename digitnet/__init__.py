"""
digitnet package
~~~~~~~~~~~~~~~~

Handwritten digit recognition with a from-scratch neural network.
Contains the matrix primitives and network implementation, MNIST data
loading, model persistence, training helpers and the API server.
"""

__version__ = "1.0.0"

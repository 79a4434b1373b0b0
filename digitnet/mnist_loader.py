"""
mnist_loader.py
~~~~~~~~~~~~~~~

Read the MNIST handwritten digit dataset from its IDX files.

The raw files are decoded with numpy and kept as compact uint8 arrays.
Samples are converted to the network's list-of-lists matrices only when a
stream hands them out, one at a time.

Expected files (optionally gzipped) inside the data directory:
- train-images-idx3-ubyte, train-labels-idx1-ubyte
- t10k-images-idx3-ubyte, t10k-labels-idx1-ubyte
"""

import gzip
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from digitnet.matrix import Matrix
from digitnet.streams import SampleStream

logger = logging.getLogger(__name__)

IMAGE_SIZE = 28
IMAGE_PIXELS = IMAGE_SIZE * IMAGE_SIZE
NUM_CLASSES = 10

# IDX type code -> big-endian numpy dtype
IDX_DTYPES = {
    0x08: np.dtype('>u1'),
    0x09: np.dtype('>i1'),
    0x0B: np.dtype('>i2'),
    0x0C: np.dtype('>i4'),
    0x0D: np.dtype('>f4'),
    0x0E: np.dtype('>f8'),
}

MNIST_FILES = {
    'training': ('train-images-idx3-ubyte', 'train-labels-idx1-ubyte'),
    'test': ('t10k-images-idx3-ubyte', 't10k-labels-idx1-ubyte'),
}


def parse_idx(raw: bytes) -> np.ndarray:
    """
    Decode the contents of an IDX file.

    Args:
        raw: File contents

    Returns:
        Array shaped by the dimensions declared in the header

    Raises:
        ValueError: If the header is malformed or the data is truncated
    """
    if len(raw) < 4 or raw[0] != 0 or raw[1] != 0:
        raise ValueError("Not an IDX file: bad magic number")

    type_code, ndim = raw[2], raw[3]
    if type_code not in IDX_DTYPES:
        raise ValueError(f"Unknown IDX data type 0x{type_code:02x}")

    header_end = 4 + 4 * ndim
    if len(raw) < header_end:
        raise ValueError("Truncated IDX header")
    dims = tuple(
        int(d) for d in np.frombuffer(raw, dtype='>u4', count=ndim, offset=4)
    )

    dtype = IDX_DTYPES[type_code]
    count = int(np.prod(dims)) if dims else 1
    expected = count * dtype.itemsize
    if len(raw) - header_end < expected:
        raise ValueError(
            f"Truncated IDX data: expected {expected} bytes, "
            f"got {len(raw) - header_end}"
        )

    data = np.frombuffer(raw, dtype=dtype, count=count, offset=header_end)
    return data.reshape(dims)


def read_idx(path: str) -> np.ndarray:
    """Read an IDX file from disk; ``.gz`` files are decompressed."""
    opener = gzip.open if path.endswith('.gz') else open
    with opener(path, 'rb') as f:
        raw = f.read()
    array = parse_idx(raw)
    logger.debug(f"Read {path}: shape {array.shape}, dtype {array.dtype}")
    return array


def image_to_column(image: np.ndarray) -> Matrix:
    """Flatten an image into a column scaled from 0-255 to 0-1."""
    return [[float(v) / 255.0] for v in np.asarray(image).reshape(-1)]


def label_to_column(label: int, num_classes: int = NUM_CLASSES) -> Matrix:
    """One-hot column for a class index."""
    return [[1.0 if i == label else 0.0] for i in range(num_classes)]


def pixels_to_input(pixels: Sequence) -> Matrix:
    """
    Convert a drawn pixel grid into a network input column.

    Args:
        pixels: 2-D grid (row by row) or flat list of 0-255 brightness values

    Returns:
        Column matrix scaled the same way as training images

    Raises:
        ValueError: If the values are not numeric or the grid is ragged
    """
    try:
        array = np.asarray(pixels, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid pixel data: {e}") from e
    return image_to_column(array)


class ImageStream(SampleStream):
    """Stream of image columns backed by an ``(n, ...)`` array."""

    def __init__(self, images: np.ndarray):
        super().__init__(len(images))
        self._images = images

    def _read(self, index: int) -> Matrix:
        return image_to_column(self._images[index])


class LabelStream(SampleStream):
    """Stream of one-hot label columns backed by an ``(n,)`` array."""

    def __init__(self, labels: np.ndarray, num_classes: int = NUM_CLASSES):
        super().__init__(len(labels))
        self._labels = labels
        self.num_classes = num_classes

    def _read(self, index: int) -> Matrix:
        return label_to_column(int(self._labels[index]), self.num_classes)


@dataclass
class MnistSet:
    """One split of the dataset: images and their class labels."""

    images: np.ndarray
    labels: np.ndarray

    def __post_init__(self):
        if len(self.images) != len(self.labels):
            raise ValueError(
                f"{len(self.images)} images but {len(self.labels)} labels"
            )

    def __len__(self) -> int:
        return len(self.labels)

    def image_stream(self, limit: Optional[int] = None) -> ImageStream:
        stream = ImageStream(self.images)
        if limit is not None:
            stream.limit(limit)
        return stream

    def label_stream(self, limit: Optional[int] = None) -> LabelStream:
        stream = LabelStream(self.labels)
        if limit is not None:
            stream.limit(limit)
        return stream

    def sample(self, index: int) -> Tuple[Matrix, int]:
        """Return ``(image column, label)`` for one example."""
        return image_to_column(self.images[index]), int(self.labels[index])


def _find_file(data_dir: str, name: str) -> str:
    for candidate in (name, name + '.gz'):
        path = os.path.join(data_dir, candidate)
        if os.path.exists(path):
            return path
    raise FileNotFoundError(
        f"MNIST file '{name}' (or '{name}.gz') not found in {data_dir}"
    )


def load_mnist(data_dir: str = 'data') -> Dict[str, MnistSet]:
    """
    Load the training and test splits.

    Args:
        data_dir: Directory holding the four MNIST IDX files

    Returns:
        ``{'training': MnistSet, 'test': MnistSet}``

    Raises:
        FileNotFoundError: If a file is missing
        ValueError: If a file is not valid IDX
    """
    splits = {}
    for split, (images_name, labels_name) in MNIST_FILES.items():
        images = read_idx(_find_file(data_dir, images_name))
        labels = read_idx(_find_file(data_dir, labels_name))
        splits[split] = MnistSet(images=images, labels=labels)

    logger.info(
        f"Loaded MNIST from {data_dir}: {len(splits['training'])} training, "
        f"{len(splits['test'])} test"
    )
    return splits

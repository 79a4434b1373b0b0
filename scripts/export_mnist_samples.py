#!/usr/bin/env python3
"""
Export the first MNIST test digits to a JSON file.

Usage:
    python scripts/export_mnist_samples.py --count 100

Writes models/MNIST_TEST.json holding {"images": [...], "labels": [...]},
where each image is a 784x1 column scaled to [0, 1] and each label a 10x1
one-hot column. Front ends use it to show sample digits without the
dataset.
"""

import argparse
import sys

from digitnet.mnist_loader import load_mnist
from digitnet.model_persistence import save_json
from digitnet.training import export_samples


def main():
    """Main export function."""
    parser = argparse.ArgumentParser(description=__doc__.split('\n')[1])
    parser.add_argument('--data-dir', default='data')
    parser.add_argument('--model-dir', default='models')
    parser.add_argument('--name', default='MNIST_TEST')
    parser.add_argument('--count', type=int, default=100)
    args = parser.parse_args()

    try:
        splits = load_mnist(args.data_dir)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Error: {e}")
        sys.exit(1)

    samples = export_samples(splits['test'], limit=args.count)

    try:
        path = save_json(args.name, samples, args.model_dir)
    except FileExistsError:
        print(f"❌ {args.name}.json already exists in {args.model_dir}")
        sys.exit(1)

    print(f"✅ Exported {len(samples['images'])} test digits to {path}")


if __name__ == '__main__':
    main()

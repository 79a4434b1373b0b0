#!/usr/bin/env python3
"""
Train a digit recognition network on MNIST.

Usage:
    python scripts/train_mnist.py --layers 784 200 80 10 --epochs 2
    python scripts/train_mnist.py --resume MNIST --name MNIST-2

The script will:
1. Create a new network or resume from a saved JSON snapshot
2. Train it for the requested number of epochs, doubling the batch size
   after each epoch
3. Report accuracy on the test split
4. Save the trained network as models/<name>.json
"""

import argparse
import logging
import os
import sys

from digitnet.mnist_loader import load_mnist
from digitnet.model_persistence import load_network_file, save_network_file
from digitnet.network import Network
from digitnet.training import accuracy, train_epochs


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.split('\n')[1])
    parser.add_argument('--data-dir', default='data',
                        help='directory holding the MNIST IDX files')
    parser.add_argument('--model-dir', default='models',
                        help='directory for JSON snapshots')
    parser.add_argument('--layers', type=int, nargs='+',
                        default=[784, 200, 80, 10],
                        help='layer sizes for a new network')
    parser.add_argument('--resume', metavar='NAME',
                        help='continue training a saved snapshot')
    parser.add_argument('--name', default='MNIST',
                        help='snapshot name to save under')
    parser.add_argument('--epochs', type=int, default=2)
    parser.add_argument('--batch-size', type=int, default=512)
    parser.add_argument('--learning-rate', type=float, default=0.01)
    parser.add_argument('--limit', type=int,
                        help='train on only the first N examples')
    parser.add_argument('--progress', action='store_true',
                        help='show a progress bar')
    return parser.parse_args()


def main():
    """Main training function."""
    args = parse_args()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print("MNIST Digit Network Trainer")
    print("=" * 60)

    try:
        splits = load_mnist(args.data_dir)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Error: {e}")
        sys.exit(1)

    if args.resume:
        print(f"📂 Resuming from snapshot: {args.resume}")
        network = load_network_file(args.resume, args.model_dir)
    else:
        print(f"🆕 New network with layers {args.layers}")
        network = Network(args.layers)

    network.update_options(
        batch_size=args.batch_size,
        learning_rate=args.learning_rate,
        progress=args.progress
    )

    train_epochs(
        network,
        splits['training'],
        args.epochs,
        limit=args.limit,
        callback=lambda data: print(
            f"✅ Epoch {data['epoch']}/{data['total_epochs']} over "
            f"({data['elapsed_time']:.1f}s)"
        )
    )

    score = accuracy(network, splits['test'])
    print(f"\n🎯 Test accuracy: {score:.2%}")

    try:
        path = save_network_file(network, args.name, args.model_dir)
    except FileExistsError:
        print(f"❌ {os.path.join(args.model_dir, args.name)}.json already "
              f"exists; pick another --name")
        sys.exit(1)
    print(f"💾 Saved network to {path}")


if __name__ == '__main__':
    main()

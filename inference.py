#inference.py
"""
Command line entry point: classify a batch of digits with the naive CNN and report accuracy and elapsed time.

    naive-cnn-infer --model model.npz --testdata test10.npz --batch-size 10
    naive-cnn-infer --model model.pt --mnist ./data --batch-size 10000 --chunk-size 1000 --progress

Prints
    Done with 10 queries in elapsed = 1.23457 milliseconds. Correctness: 1
"""

import argparse
import sys
from dataclasses import dataclass

import numpy as np
import torch

from accuracy import correctness, per_class_report, reference_labels
from errors import InferenceError
from forward_pipeline import ForwardPipeline
from inference_config import InferenceConfig
from mnist_data import load_mnist, load_testdata
from model_weights import ModelWeights
from utils.profiler import profiler

@dataclass
class InferenceResult:
    labels: torch.Tensor
    reference: torch.Tensor
    correctness: float
    elapsed_ms: float

    def summary(self) -> str:
        # six significant digits, like printing a double and a float through std::cout
        return (f"Done with {self.labels.shape[0]} queries in elapsed = {self.elapsed_ms:g} milliseconds. "
                f"Correctness: {float(np.float32(self.correctness)):g}")

def get_args(argv=None):
    parser = argparse.ArgumentParser(description='Forward inference of a small CNN on 28x28 digits.')

    parser.add_argument('--batch-size', '--batch_size', type=int, default=None, help='Number of queries to classify (default: 10000).')
    parser.add_argument('--testdata', type=str, default=None, help='.npz or .pt file with the inputs x (N,28,28,1) and reference scores y (N,10).')
    parser.add_argument('--mnist', dest='mnist_root', type=str, default=None, help='Use the torchvision MNIST test set stored (or downloaded) here instead of --testdata.')
    parser.add_argument('--model', type=str, default=None, help='.npz or .pt file with the weights conv1, conv2, fc1, fc2.')
    parser.add_argument('--chunk-size', type=int, default=None, help='Samples per forward pass. Default: the whole batch.')
    parser.add_argument('--progress', action='store_true', default=None, help='Show a progress bar over the chunks.')
    parser.add_argument('--quiet', dest='verbose', action='store_false', default=None, help='Do not print profiler banners.')
    parser.add_argument('--num-threads', type=int, default=None, help='Number of torch intra-op threads.')
    parser.add_argument('--per-class', action='store_true', help='Also print the accuracy of every class.')
    parser.add_argument('--config', type=str, default=None, help='JSON file with InferenceConfig fields. Command line flags take precedence.')

    return parser, parser.parse_args(argv)

def build_config(args) -> InferenceConfig:
    overrides = {
        'batch_size': args.batch_size,
        'testdata': args.testdata,
        'mnist_root': args.mnist_root,
        'model': args.model,
        'chunk_size': args.chunk_size,
        'progress': args.progress,
        'verbose': args.verbose,
        'num_threads': args.num_threads,
    }
    if args.config:
        return InferenceConfig.from_file(args.config, **overrides)
    return InferenceConfig(**{k: v for k, v in overrides.items() if v is not None})

def run(config: InferenceConfig) -> InferenceResult:
    """Load data and model, time the forward pass, and compare against the reference labels."""
    if config.model is None:
        raise ValueError("Config error: no model file given.")
    if config.testdata is None and config.mnist_root is None:
        raise ValueError("Config error: give either a testdata file or an MNIST root directory.")
    if config.num_threads is not None:
        torch.set_num_threads(config.num_threads)

    if config.verbose:
        print(f'Running inference with config:\n{config}')

    # Load data into x and y
    if config.testdata is not None:
        x, y = load_testdata(config.testdata, config.batch_size)
    else:
        x, y = load_mnist(config.mnist_root, config.batch_size)

    # Load model
    weights = ModelWeights.load(config.model)
    pipeline = ForwardPipeline(weights, config)
    if config.verbose:
        print(pipeline.dims.stage_table(config.batch_size).to_string())

    with profiler(f'Forward pass over {config.batch_size} queries', verbose=config.verbose) as timing:
        labels = pipeline(x)

    reference = reference_labels(y)
    return InferenceResult(
        labels=labels,
        reference=reference,
        correctness=correctness(labels, reference),
        elapsed_ms=timing.elapsed_ms,
    )

def main(argv=None) -> int:
    parser, args = get_args(argv)
    try:
        config = build_config(args)
    except (TypeError, ValueError, OSError) as e:
        parser.error(str(e))

    try:
        result = run(config)
    except (InferenceError, ValueError, FileNotFoundError) as e:
        print(f'error: {e}', file=sys.stderr)
        return 1

    print(result.summary())
    if args.per_class:
        print(per_class_report(result.labels, result.reference).to_string())
    return 0

if __name__ == "__main__":
    sys.exit(main())

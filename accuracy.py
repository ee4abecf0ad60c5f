#accuracy.py
"""
Compare predicted labels with reference labels.
Reference labels come from the reference score matrix through the same argmax kernel the network uses.
"""

import numpy as np
import pandas as pd
import torch

from conv_kernels import argmax
from errors import ShapeError

def _check_labels(predicted: torch.Tensor, reference: torch.Tensor) -> None:
    for name, labels in (('predicted', predicted), ('reference', reference)):
        if not isinstance(labels, torch.Tensor):
            raise TypeError(f"Accuracy error: '{name}' is of type {type(labels)}, expected torch.Tensor.")
        if labels.dim() != 1:
            raise ShapeError(f"Accuracy error: '{name}' has shape {tuple(labels.shape)}, expected a vector.")
    if predicted.shape != reference.shape:
        raise ShapeError(f"Accuracy error: {predicted.shape[0]} predicted labels vs {reference.shape[0]} reference labels.")
    if predicted.numel() == 0:
        raise ShapeError("Accuracy error: no labels to compare.")

def reference_labels(scores: torch.Tensor) -> torch.Tensor:
    """Expected label of every sample, from a (batch, 10) reference score matrix."""
    return argmax(scores)

def correctness(predicted: torch.Tensor, reference: torch.Tensor) -> float:
    """Fraction of samples whose predicted label equals the reference label, in [0, 1]."""
    _check_labels(predicted, reference)
    num_correct = int((predicted == reference).sum().item())
    return num_correct / predicted.numel()

def per_class_report(predicted: torch.Tensor, reference: torch.Tensor, num_classes: int = 10) -> pd.DataFrame:
    """
    One row per reference class: how many samples it has, how many were classified correctly, and the accuracy.
    Classes without samples have NaN accuracy.
    """
    _check_labels(predicted, reference)
    predicted = predicted.cpu().numpy()
    reference = reference.cpu().numpy()

    support = np.bincount(reference, minlength=num_classes)
    correct = np.bincount(reference[predicted == reference], minlength=num_classes)
    accuracy = np.where(support > 0, correct / np.maximum(support, 1), np.nan)

    return pd.DataFrame(
        {'Support': support, 'Correct': correct, 'Accuracy': accuracy},
        index=pd.RangeIndex(num_classes, name='Class'),
    )

def confusion_matrix(predicted: torch.Tensor, reference: torch.Tensor, num_classes: int = 10) -> pd.DataFrame:
    """Counts of (reference, predicted) label pairs. Rows are reference classes, columns predicted classes."""
    _check_labels(predicted, reference)
    pairs = pd.DataFrame({'Reference': reference.cpu().numpy(), 'Predicted': predicted.cpu().numpy()})
    classes = range(num_classes)
    return (pd.crosstab(pairs['Reference'], pairs['Predicted'])
              .reindex(index=classes, columns=classes, fill_value=0)
              .rename_axis(index='Reference', columns='Predicted'))

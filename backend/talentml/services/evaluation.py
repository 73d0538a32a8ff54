"""
Model evaluation metrics.

All functions are pure: the same predictions and labels always give the
same metrics. Labels at or above 0.5 count as positive, as do scores.
"""

from typing import Sequence

import numpy as np

from talentml.schemas.ml import ModelMetrics

THRESHOLD = 0.5


def auc_roc(predictions: Sequence[float], labels: Sequence[float]) -> float:
    """
    Area under the ROC curve via the Mann-Whitney rank-sum statistic.

    Tied scores share their average rank. Returns 0.5 when only one class
    is present, since the curve is undefined.
    """
    scores = np.asarray(predictions, dtype=np.float64)
    positive = np.asarray(labels, dtype=np.float64) >= THRESHOLD

    n_pos = int(positive.sum())
    n_neg = int(positive.size - n_pos)
    if n_pos == 0 or n_neg == 0:
        return 0.5

    _, inverse, counts = np.unique(scores, return_inverse=True, return_counts=True)
    upper_ranks = np.cumsum(counts)
    average_ranks = upper_ranks - (counts - 1) / 2.0
    ranks = average_ranks[inverse]

    rank_sum = ranks[positive].sum()
    return float((rank_sum - n_pos * (n_pos + 1) / 2.0) / (n_pos * n_neg))


def calculate_metrics(predictions: Sequence[float], labels: Sequence[float]) -> ModelMetrics:
    """
    Confusion matrix at 0.5 plus accuracy, precision, recall, F1 and AUC.

    Args:
        predictions: Model scores in [0, 1]
        labels: Ground-truth labels (binary or soft)

    Raises:
        ValueError: If the two sequences differ in length
    """
    if len(predictions) != len(labels):
        raise ValueError(
            f"Got {len(predictions)} predictions for {len(labels)} labels"
        )

    if len(labels) == 0:
        return ModelMetrics()

    predicted = np.asarray(predictions, dtype=np.float64) >= THRESHOLD
    actual = np.asarray(labels, dtype=np.float64) >= THRESHOLD

    tp = int(np.sum(predicted & actual))
    fp = int(np.sum(predicted & ~actual))
    tn = int(np.sum(~predicted & ~actual))
    fn = int(np.sum(~predicted & actual))
    total = tp + fp + tn + fn

    accuracy = (tp + tn) / total
    precision = tp / (tp + fp) if tp + fp > 0 else 0.0
    recall = tp / (tp + fn) if tp + fn > 0 else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0

    return ModelMetrics(
        accuracy=accuracy,
        precision=precision,
        recall=recall,
        f1_score=f1,
        auc_roc=auc_roc(predictions, labels),
        confusion_matrix={
            "true_positive": tp,
            "false_positive": fp,
            "true_negative": tn,
            "false_negative": fn,
        },
        sample_count=total,
    )

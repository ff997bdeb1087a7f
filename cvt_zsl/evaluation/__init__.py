"""Supervised, zero-shot and efficiency evaluation."""

from cvt_zsl.evaluation.metrics import evaluate_model, measure_efficiency, save_metrics
from cvt_zsl.evaluation.zsl import (
    CollectedOutputs,
    calibrated_stacking,
    collect_outputs,
    evaluate_eszsl,
    evaluate_zsl,
    gzsl_accuracies,
    harmonic_mean,
    per_class_accuracy,
    seen_unseen_curve,
    zsl_metrics_from_logits,
)

__all__ = [
    "evaluate_model",
    "measure_efficiency",
    "save_metrics",
    "CollectedOutputs",
    "calibrated_stacking",
    "collect_outputs",
    "evaluate_eszsl",
    "evaluate_zsl",
    "gzsl_accuracies",
    "harmonic_mean",
    "per_class_accuracy",
    "seen_unseen_curve",
    "zsl_metrics_from_logits",
]

"""
Zero-shot and generalized zero-shot evaluation.

Follows the protocol of Xian et al., "Zero-Shot Learning - A Comprehensive
Evaluation of the Good, the Bad and the Ugly" (TPAMI 2018): accuracies are
averaged per class, GZSL is summarized by the harmonic mean of seen and
unseen accuracy, and Chao et al.'s (ECCV 2016) calibrated stacking trades
one for the other. Sweeping the calibration constant traces the seen/unseen
curve whose area is AUSUC.

Logits passed to these functions are laid out in the ``"all"`` label space:
seen classes first, then unseen, as produced by ``ClassSplit``.
"""

from __future__ import annotations

import logging
from typing import Any, NamedTuple

import torch
import torch.nn as nn
from torchmetrics.classification import MulticlassAccuracy
from tqdm import tqdm

from cvt_zsl.data.splits import ClassSplit
from cvt_zsl.models.zsl import ESZSL

logger = logging.getLogger(__name__)

__all__ = [
    "CollectedOutputs",
    "collect_outputs",
    "per_class_accuracy",
    "harmonic_mean",
    "calibrated_stacking",
    "gzsl_accuracies",
    "seen_unseen_curve",
    "zsl_metrics_from_logits",
    "evaluate_zsl",
    "evaluate_eszsl",
]


class CollectedOutputs(NamedTuple):
    logits: torch.Tensor
    features: torch.Tensor
    targets: torch.Tensor


@torch.no_grad()
def collect_outputs(
    model: nn.Module,
    data_loader: torch.utils.data.DataLoader,
    device: torch.device,
    class_embeddings: torch.Tensor | None = None,
    *,
    progress: bool = False,
) -> CollectedOutputs:
    """Run ``model`` over a loader and gather logits, features and targets on CPU."""
    model.eval()
    logits, features, targets = [], [], []
    batches = tqdm(data_loader, desc="Collecting") if progress else data_loader
    for inputs, batch_targets in batches:
        inputs = inputs.to(device, non_blocking=True)
        if class_embeddings is None:
            out = model(inputs)
        else:
            out = model(inputs, class_embeddings)
        logits.append(out.logits.float().cpu())
        features.append(out.features.float().cpu())
        targets.append(torch.as_tensor(batch_targets))

    if not targets:
        raise ValueError("Loader produced no samples")
    return CollectedOutputs(torch.cat(logits), torch.cat(features), torch.cat(targets).long())


def per_class_accuracy(predictions: torch.Tensor, targets: torch.Tensor, num_classes: int) -> float:
    """Accuracy averaged over the classes present in ``targets``."""
    if targets.numel() == 0:
        raise ValueError("per_class_accuracy needs at least one target")
    metric = MulticlassAccuracy(num_classes=num_classes, average="none")
    per_class = metric(predictions.cpu(), targets.cpu())
    present = torch.bincount(targets.cpu(), minlength=num_classes) > 0
    return per_class[present].mean().item()


def harmonic_mean(seen_acc: float, unseen_acc: float) -> float:
    if seen_acc + unseen_acc == 0:
        return 0.0
    return 2 * seen_acc * unseen_acc / (seen_acc + unseen_acc)


def calibrated_stacking(logits: torch.Tensor, seen_mask: torch.Tensor, gamma: float) -> torch.Tensor:
    """Subtract ``gamma`` from every seen-class score."""
    return logits - gamma * seen_mask.to(device=logits.device, dtype=logits.dtype)


def gzsl_accuracies(
    seen: CollectedOutputs,
    unseen: CollectedOutputs,
    seen_mask: torch.Tensor,
    gamma: float = 0.0,
) -> tuple[float, float, float]:
    """Per-class seen accuracy, unseen accuracy and their harmonic mean."""
    num_classes = seen_mask.numel()
    seen_pred = calibrated_stacking(seen.logits, seen_mask, gamma).argmax(dim=1)
    unseen_pred = calibrated_stacking(unseen.logits, seen_mask, gamma).argmax(dim=1)
    acc_s = per_class_accuracy(seen_pred, seen.targets, num_classes)
    acc_u = per_class_accuracy(unseen_pred, unseen.targets, num_classes)
    return acc_s, acc_u, harmonic_mean(acc_s, acc_u)


def _score_gaps(logits: torch.Tensor, seen_mask: torch.Tensor) -> torch.Tensor:
    return logits[:, seen_mask].max(dim=1).values - logits[:, ~seen_mask].max(dim=1).values


def seen_unseen_curve(
    seen: CollectedOutputs,
    unseen: CollectedOutputs,
    seen_mask: torch.Tensor,
    steps: int = 200,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Seen and unseen accuracy as the calibration constant sweeps its range.

    Below the smallest seen-minus-unseen score gap every image is assigned a
    seen class; above the largest gap every image is assigned an unseen
    class, so the curve runs between both axes.

    Returns:
        (gammas, unseen accuracies, seen accuracies)
    """
    if steps < 2:
        raise ValueError("steps must be at least 2")
    gaps = torch.cat([_score_gaps(seen.logits, seen_mask), _score_gaps(unseen.logits, seen_mask)])
    low, high = gaps.min().item(), gaps.max().item()
    margin = 1e-4 * max(high - low, 1.0)
    gammas = torch.linspace(low - margin, high + margin, steps)

    acc_u, acc_s = [], []
    for gamma in gammas.tolist():
        s, u, _ = gzsl_accuracies(seen, unseen, seen_mask, gamma)
        acc_s.append(s)
        acc_u.append(u)
    return gammas, torch.tensor(acc_u), torch.tensor(acc_s)


def _ausuc(acc_u: torch.Tensor, acc_s: torch.Tensor) -> float:
    order = torch.argsort(acc_u, stable=True)
    return torch.trapezoid(acc_s[order], acc_u[order]).item()


def zsl_metrics_from_logits(
    seen: CollectedOutputs,
    unseen: CollectedOutputs,
    seen_mask: torch.Tensor,
    *,
    gamma: float = 0.0,
    curve_steps: int = 200,
) -> dict[str, Any]:
    """ZSL / GZSL summary from logits over the ``"all"`` label space.

    Accuracies are percentages, AUSUC is in [0, 1].
    """
    seen_mask = seen_mask.bool().cpu()
    num_seen = int(seen_mask.sum())
    num_unseen = seen_mask.numel() - num_seen

    zsl_pred = unseen.logits[:, ~seen_mask].argmax(dim=1)
    zsl_acc = per_class_accuracy(zsl_pred, unseen.targets - num_seen, num_unseen)

    acc_s, acc_u, h = gzsl_accuracies(seen, unseen, seen_mask)
    gammas, curve_u, curve_s = seen_unseen_curve(seen, unseen, seen_mask, curve_steps)

    results: dict[str, Any] = {
        "zsl_acc": 100.0 * zsl_acc,
        "gzsl_seen_acc": 100.0 * acc_s,
        "gzsl_unseen_acc": 100.0 * acc_u,
        "gzsl_h": 100.0 * h,
        "ausuc": _ausuc(curve_u, curve_s),
    }

    h_curve = 2 * curve_s * curve_u / (curve_s + curve_u).clamp_min(1e-12)
    best = int(h_curve.argmax())
    results["best_gamma"] = gammas[best].item()
    results["best_gamma_h"] = 100.0 * h_curve[best].item()

    if gamma:
        cal_s, cal_u, cal_h = gzsl_accuracies(seen, unseen, seen_mask, gamma)
        results.update({
            "calibration_gamma": gamma,
            "calibrated_seen_acc": 100.0 * cal_s,
            "calibrated_unseen_acc": 100.0 * cal_u,
            "calibrated_h": 100.0 * cal_h,
        })
    return results


def evaluate_zsl(
    model: nn.Module,
    test_seen: torch.utils.data.DataLoader,
    test_unseen: torch.utils.data.DataLoader,
    device: torch.device,
    split: ClassSplit,
    semantics: torch.Tensor,
    *,
    gamma: float = 0.0,
    curve_steps: int = 200,
) -> tuple[dict[str, Any], CollectedOutputs, CollectedOutputs]:
    """Evaluate a zero-shot model over the seen+unseen class set.

    Test loaders must label images in the ``"all"`` space.
    """
    all_embeddings = split.embeddings(semantics, "all").to(device)
    seen = collect_outputs(model, test_seen, device, all_embeddings, progress=True)
    unseen = collect_outputs(model, test_unseen, device, all_embeddings, progress=True)

    results = zsl_metrics_from_logits(
        seen, unseen, split.seen_mask(), gamma=gamma, curve_steps=curve_steps,
    )
    logger.info(
        "ZSL acc=%.2f | GZSL S=%.2f U=%.2f H=%.2f | AUSUC=%.4f",
        results["zsl_acc"], results["gzsl_seen_acc"], results["gzsl_unseen_acc"],
        results["gzsl_h"], results["ausuc"],
    )
    return results, seen, unseen


def evaluate_eszsl(
    train_features: torch.Tensor,
    train_targets: torch.Tensor,
    seen: CollectedOutputs,
    unseen: CollectedOutputs,
    split: ClassSplit,
    semantics: torch.Tensor,
    *,
    alpha: float = 3.0,
    gamma: float = 0.0,
    calibration_gamma: float = 0.0,
    curve_steps: int = 200,
) -> dict[str, Any]:
    """Fit ESZSL on seen-class training features and score the test features.

    ``train_targets`` are in the ``"seen"`` space; ``seen`` / ``unseen``
    targets are in the ``"all"`` space.
    """
    eszsl = ESZSL(alpha=alpha, gamma=gamma).fit(
        train_features, train_targets, split.embeddings(semantics, "seen"),
    )
    all_embeddings = split.embeddings(semantics, "all")
    seen_scored = seen._replace(logits=eszsl.predict_scores(seen.features, all_embeddings))
    unseen_scored = unseen._replace(logits=eszsl.predict_scores(unseen.features, all_embeddings))
    return zsl_metrics_from_logits(
        seen_scored, unseen_scored, split.seen_mask(),
        gamma=calibration_gamma, curve_steps=curve_steps,
    )

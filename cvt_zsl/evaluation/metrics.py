from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

import torch
import torch.nn as nn
from torch.utils.flop_counter import FlopCounterMode
from torchmetrics.classification import (
    MulticlassAccuracy,
    MulticlassCalibrationError,
)
from tqdm import tqdm

from cvt_zsl.config import ExperimentConfig, save_config


@torch.no_grad()
def evaluate_model(
    model: nn.Module,
    data_loader: torch.utils.data.DataLoader,
    device: torch.device,
    criterion: nn.Module,
    *,
    num_classes: int,
    class_embeddings: torch.Tensor | None = None,
    progress: bool = False,
) -> dict[str, Any]:
    """Top-1 / top-5 accuracy, loss and calibration error.

    ``class_embeddings`` is forwarded to zero-shot models and selects the
    class set the logits span.
    """
    model.eval()

    top_k = min(5, num_classes)
    acc_top1 = MulticlassAccuracy(num_classes=num_classes, top_k=1, average="micro").to(device)
    acc_top5 = MulticlassAccuracy(num_classes=num_classes, top_k=top_k, average="micro").to(device)
    ece = MulticlassCalibrationError(num_classes=num_classes, n_bins=15, norm="l1").to(device)

    total_loss = 0.0
    total = 0

    batches = tqdm(data_loader, desc="Evaluating") if progress else data_loader
    for inputs, targets in batches:
        inputs = inputs.to(device, non_blocking=True)
        targets = targets.to(device, non_blocking=True)

        if class_embeddings is None:
            outputs = model(inputs).logits
        else:
            outputs = model(inputs, class_embeddings).logits
        outputs = outputs.float()

        total_loss += criterion(outputs, targets).item() * inputs.size(0)
        total += targets.size(0)

        acc_top1.update(outputs, targets)
        acc_top5.update(outputs, targets)
        ece.update(outputs.softmax(dim=1), targets)

    if total == 0:
        raise ValueError("Evaluation loader produced no samples")

    return {
        "val_acc": 100.0 * acc_top1.compute().item(),
        "val_acc_top5": 100.0 * acc_top5.compute().item(),
        "loss": total_loss / total,
        "ece": ece.compute().item(),
    }


@torch.no_grad()
def measure_efficiency(
    model: nn.Module,
    device: torch.device,
    *,
    image_size: int = 224,
    in_channels: int = 3,
    batch_size: int = 64,
    num_warmup: int = 50,
    num_batches: int = 200,
) -> dict[str, float]:
    model.eval()

    param_count = sum(p.numel() for p in model.parameters())
    param_count_m = param_count / 1e6

    dummy = torch.randn(1, in_channels, image_size, image_size, device=device)
    flop_counter = FlopCounterMode(display=False)
    with flop_counter:
        model(dummy)
    gflops = flop_counter.get_total_flops() / 1e9

    dummy_batch = torch.randn(batch_size, in_channels, image_size, image_size, device=device)
    for _ in range(num_warmup):
        model(dummy_batch)
    if device.type == "cuda":
        torch.cuda.synchronize()

    start = time.perf_counter()
    for _ in range(num_batches):
        model(dummy_batch)
    if device.type == "cuda":
        torch.cuda.synchronize()
    elapsed = time.perf_counter() - start

    throughput = (batch_size * num_batches) / elapsed

    return {
        "param_count": param_count,
        "param_count_m": param_count_m,
        "gflops": gflops,
        "throughput_img_per_sec": throughput,
    }


def save_metrics(
    results: dict[str, Any],
    output_dir: Path,
    config: ExperimentConfig,
) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    save_config(config, output_dir / "config.yaml")
    metrics_path = output_dir / "metrics.json"
    with open(metrics_path, "w") as f:
        json.dump(results, f, indent=2)
    return metrics_path

"""CvT training engine (supervised and zero-shot)."""

from __future__ import annotations

import logging
import os
import random
import time
from collections import defaultdict
from datetime import timedelta
from pathlib import Path
from typing import Any

import numpy as np
import torch
import torch.distributed as dist
import torch.nn as nn
import torch.optim as optim
from torch.amp import autocast
from torch.optim.swa_utils import AveragedModel, SWALR
from torchvision.transforms.v2 import CutMix, MixUp, RandomChoice
from tqdm import tqdm

from cvt_zsl.config import ExperimentConfig
from cvt_zsl.evaluation.metrics import evaluate_model
from cvt_zsl.runtime_log import log_event
from cvt_zsl.training.checkpointing import capture_rng_state, restore_rng_state

logger = logging.getLogger(__name__)

__all__ = ["CvTTrainer", "init_distributed", "seed_everything", "build_param_groups"]


def init_distributed() -> tuple[int, int, torch.device]:
    """Initialize DDP from torchrun environment variables.

    Without torchrun variables the run is a single process on CUDA when
    available, else CPU.
    """
    if "RANK" not in os.environ:
        device = torch.device("cuda:0" if torch.cuda.is_available() else "cpu")
        if device.type == "cuda":
            torch.set_float32_matmul_precision("high")
        return 0, 1, device

    rank = int(os.environ["RANK"])
    world_size = int(os.environ["WORLD_SIZE"])
    local_rank = int(os.environ["LOCAL_RANK"])

    torch.cuda.set_device(local_rank)
    device = torch.device(f"cuda:{local_rank}")
    torch.set_float32_matmul_precision("high")
    torch.backends.cuda.matmul.allow_tf32 = True
    torch.backends.cudnn.allow_tf32 = True
    dist.init_process_group(
        backend="nccl",
        init_method="env://",
        world_size=world_size,
        rank=rank,
        timeout=timedelta(minutes=30),
    )
    return rank, world_size, device


def seed_everything(seed: int, rank: int = 0) -> None:
    """Set all random seeds deterministically."""
    effective_seed = seed + rank
    random.seed(effective_seed)
    np.random.seed(effective_seed)
    torch.manual_seed(effective_seed)
    torch.cuda.manual_seed_all(effective_seed)
    torch.backends.cudnn.benchmark = True
    torch.backends.cudnn.deterministic = False


def build_param_groups(model: nn.Module, weight_decay: float) -> list[dict[str, Any]]:
    """Split parameters into decayed weights and undecayed norms, biases and tokens."""
    skip = model.no_weight_decay() if hasattr(model, "no_weight_decay") else set()
    decay, no_decay = [], []
    for name, param in model.named_parameters():
        if not param.requires_grad:
            continue
        if param.ndim <= 1 or name.endswith(".bias") or name in skip:
            no_decay.append(param)
        else:
            decay.append(param)
    return [
        {"params": decay, "weight_decay": weight_decay},
        {"params": no_decay, "weight_decay": 0.0},
    ]


class CvTTrainer:
    """Trainer for CvT classifiers and zero-shot CvT models.

    ``model`` may be wrapped in DistributedDataParallel. Zero-shot models are
    trained over the seen classes; their seen-class embeddings must be set on
    the model (``set_class_embeddings``) before training.
    """

    def __init__(
        self,
        model: nn.Module,
        config: ExperimentConfig,
        device: torch.device,
        num_classes: int,
        rank: int = 0,
        world_size: int = 1,
    ):
        self.model = model
        self.model_without_ddp = model.module if hasattr(model, "module") else model
        self.config = config
        self.device = device
        self.num_classes = num_classes
        self.rank = rank
        self.world_size = world_size
        self.is_main_process = rank == 0

        training = config.training
        self.criterion = nn.CrossEntropyLoss(label_smoothing=training.label_smoothing)
        self.eval_criterion = nn.CrossEntropyLoss()
        self.optimizer = optim.AdamW(
            build_param_groups(self.model_without_ddp, training.weight_decay),
            lr=training.learning_rate,
            fused=device.type == "cuda",
        )

        self.warmup_epochs = max(1, int(training.warmup_fraction * training.num_epochs))
        self.scheduler = optim.lr_scheduler.SequentialLR(
            self.optimizer,
            schedulers=[
                optim.lr_scheduler.LinearLR(
                    self.optimizer,
                    start_factor=1.0 / self.warmup_epochs,
                    total_iters=self.warmup_epochs,
                ),
                optim.lr_scheduler.CosineAnnealingLR(
                    self.optimizer,
                    T_max=max(1, training.num_epochs - self.warmup_epochs),
                    eta_min=training.cosine_eta_min,
                ),
            ],
            milestones=[self.warmup_epochs],
        )

        self.swa_start_epoch = int(training.swa_start_epoch * training.num_epochs)
        self.use_swa = self.swa_start_epoch < training.num_epochs
        self.swa_model = AveragedModel(self.model_without_ddp) if self.use_swa else None
        self.swa_scheduler = SWALR(self.optimizer, swa_lr=training.swa_lr) if self.use_swa else None

        self.early_stopping_patience = training.early_stopping_patience
        self.early_stopping_min_delta = training.early_stopping_min_delta
        self._early_stop_counter = 0
        self._early_stop_best_score = -float("inf")

        self._autocast_dtype = getattr(torch, training.autocast_dtype)
        self._use_autocast = self._autocast_dtype != torch.float32
        self._grad_clip_norm = training.grad_clip_norm
        self.current_epoch = 0
        self.global_step = 0
        self.best_val_acc = 0.0
        self.metrics_history: dict[str, list[Any]] = defaultdict(list)

        mixers = []
        if training.mixup_alpha > 0:
            mixers.append(MixUp(alpha=training.mixup_alpha, num_classes=num_classes))
        if training.cutmix_alpha > 0:
            mixers.append(CutMix(alpha=training.cutmix_alpha, num_classes=num_classes))
        self.mixup_cutmix = RandomChoice(mixers) if mixers else None

        if self.is_main_process:
            num_params = sum(p.numel() for p in self.model_without_ddp.parameters())
            logger.info(
                f"Trainer ready: {num_params / 1e6:.2f}M params, {num_classes} classes, "
                f"warmup={self.warmup_epochs} epochs, swa={self.use_swa}, device={device}"
            )

    @property
    def checkpoint_dir(self) -> Path:
        return Path(self.config.output_dir) / self.config.experiment_name / "checkpoints"

    def save_checkpoint(self, filename: str, epoch: int, metrics: dict[str, Any]) -> Path:
        """Save model, optimizer, schedule, SWA and RNG state."""
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        checkpoint = {
            "epoch": epoch,
            "model_state_dict": self.model_without_ddp.state_dict(),
            "optimizer_state_dict": self.optimizer.state_dict(),
            "scheduler_state_dict": self.scheduler.state_dict(),
            "metrics": metrics,
            "config": self.config,
            "best_val_acc": self.best_val_acc,
            "metrics_history": dict(self.metrics_history),
            "rng_state": capture_rng_state(),
        }
        if self.swa_model is not None:
            checkpoint["swa_model_state_dict"] = self.swa_model.state_dict()
        path = self.checkpoint_dir / filename
        torch.save(checkpoint, path)
        logger.info(f"Saved {filename} (epoch {epoch + 1})")
        return path

    def load_checkpoint(self, checkpoint_path: str | Path) -> int:
        """Load checkpoint and return the epoch to resume from."""
        ckpt = torch.load(checkpoint_path, map_location=self.device, weights_only=False)
        self.model_without_ddp.load_state_dict(ckpt["model_state_dict"])
        self.optimizer.load_state_dict(ckpt["optimizer_state_dict"])
        if "scheduler_state_dict" in ckpt:
            self.scheduler.load_state_dict(ckpt["scheduler_state_dict"])
        if self.swa_model is not None and "swa_model_state_dict" in ckpt:
            self.swa_model.load_state_dict(ckpt["swa_model_state_dict"])
        self.best_val_acc = ckpt["best_val_acc"]
        self.metrics_history = defaultdict(list, ckpt["metrics_history"])
        restore_rng_state(ckpt)
        logger.info(f"Resumed from {checkpoint_path} at epoch {ckpt['epoch'] + 1}")
        return ckpt["epoch"] + 1

    def step_scheduler(self, epoch: int) -> None:
        """Step the LR schedule, switching to SWA for the tail."""
        if self.use_swa and epoch >= self.swa_start_epoch:
            self.swa_model.update_parameters(self.model_without_ddp)
            self.swa_scheduler.step()
        else:
            self.scheduler.step()

    def should_early_stop(self, val_loss: float) -> bool:
        """Early stop on non-improving validation loss."""
        score = -val_loss
        if score < self._early_stop_best_score + self.early_stopping_min_delta:
            self._early_stop_counter += 1
        else:
            self._early_stop_best_score = score
            self._early_stop_counter = 0
        return self._early_stop_counter >= self.early_stopping_patience

    def train_epoch(
        self,
        train_loader: torch.utils.data.DataLoader,
        train_sampler: torch.utils.data.distributed.DistributedSampler | None = None,
    ) -> dict[str, Any]:
        """Train one epoch."""
        if train_sampler is not None:
            train_sampler.set_epoch(self.current_epoch)
        self.model.train()

        total_loss = 0.0
        correct = 0
        total = 0
        batch_count = 0

        batches = train_loader
        if self.is_main_process:
            batches = tqdm(train_loader, desc=f"Epoch {self.current_epoch + 1}", leave=False)

        for images, targets in batches:
            images = images.to(self.device, non_blocking=True)
            targets = targets.to(self.device, non_blocking=True)

            mixed_targets = targets
            if self.mixup_cutmix is not None:
                images, mixed_targets = self.mixup_cutmix(images, targets)

            with autocast(device_type=self.device.type, dtype=self._autocast_dtype, enabled=self._use_autocast):
                logits = self.model(images).logits
                loss = self.criterion(logits.float(), mixed_targets)

            if not torch.isfinite(loss):
                raise FloatingPointError(f"Non-finite loss {loss.item()} at step {self.global_step}")

            self.optimizer.zero_grad(set_to_none=True)
            loss.backward()
            if self._grad_clip_norm > 0:
                torch.nn.utils.clip_grad_norm_(self.model.parameters(), self._grad_clip_norm)
            self.optimizer.step()

            total_loss += loss.item()
            correct += logits.argmax(1).eq(targets).sum().item()
            total += targets.size(0)
            batch_count += 1
            self.global_step += 1

        if batch_count == 0:
            raise ValueError("Training loader produced no batches (dataset smaller than batch size?)")

        metrics_tensor = torch.tensor([total_loss, correct, total, batch_count], device=self.device, dtype=torch.float64)
        if self.world_size > 1:
            dist.all_reduce(metrics_tensor, op=dist.ReduceOp.SUM)

        return {
            "train_loss": metrics_tensor[0].item() / metrics_tensor[3].item(),
            "train_acc": 100.0 * metrics_tensor[1].item() / metrics_tensor[2].item(),
            "total_samples": int(metrics_tensor[2].item()),
        }

    def validate(self, val_loader: torch.utils.data.DataLoader) -> dict[str, Any]:
        return evaluate_model(
            self.model_without_ddp, val_loader, self.device,
            self.eval_criterion, num_classes=self.num_classes,
        )

    def fit(
        self,
        train_loader: torch.utils.data.DataLoader,
        val_loader: torch.utils.data.DataLoader,
        train_sampler: torch.utils.data.distributed.DistributedSampler | None = None,
        start_epoch: int = 0,
    ) -> dict[str, list[Any]]:
        """Full training loop; returns the metric history."""
        num_epochs = self.config.training.num_epochs
        if self.is_main_process:
            log_event(
                "train_start",
                epochs=num_epochs,
                start_epoch=start_epoch,
                world_size=self.world_size,
                global_batch=self.config.data.batch_size * self.world_size,
            )

        for epoch in range(start_epoch, num_epochs):
            self.current_epoch = epoch
            epoch_start_time = time.time()

            train_metrics = self.train_epoch(train_loader, train_sampler)
            val_metrics = self.validate(val_loader)
            self.step_scheduler(epoch)

            epoch_time = time.time() - epoch_start_time
            current_lr = self.optimizer.param_groups[0]["lr"]

            if self.world_size > 1:
                dist.barrier()

            stop = False
            if self.is_main_process:
                log_event(
                    "epoch",
                    epoch=epoch + 1,
                    train_loss=train_metrics["train_loss"],
                    train_acc=train_metrics["train_acc"],
                    val_loss=val_metrics["loss"],
                    val_acc=val_metrics["val_acc"],
                    val_acc_top5=val_metrics["val_acc_top5"],
                    lr=current_lr,
                    epoch_time=epoch_time,
                    throughput=train_metrics["total_samples"] / epoch_time,
                )

                for key, value in {**train_metrics, **val_metrics, "lr": current_lr}.items():
                    self.metrics_history[key].append(value)

                if val_metrics["val_acc"] > self.best_val_acc:
                    self.best_val_acc = val_metrics["val_acc"]
                    self.save_checkpoint("best_model.pth", epoch, val_metrics)

                every = self.config.training.checkpoint_every
                if every > 0 and (epoch + 1) % every == 0:
                    self.save_checkpoint(f"checkpoint_epoch_{epoch + 1}.pth", epoch, val_metrics)

                stop = self.should_early_stop(val_metrics["loss"])
                if stop:
                    logger.info(f"Early stopping at epoch {epoch + 1} (val loss {val_metrics['loss']:.4f})")

            if self.world_size > 1:
                flag = torch.tensor([float(stop)], device=self.device)
                dist.broadcast(flag, src=0)
                stop = bool(flag.item())
            if stop:
                break

        if self.swa_model is not None and self.current_epoch >= self.swa_start_epoch:
            torch.optim.swa_utils.update_bn(train_loader, self.swa_model, self.device)
            if self.is_main_process:
                swa_metrics = evaluate_model(
                    self.swa_model.module, val_loader, self.device,
                    self.eval_criterion, num_classes=self.num_classes,
                )
                self.metrics_history["swa_val_acc"].append(swa_metrics["val_acc"])
                self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
                torch.save(
                    {"model_state_dict": self.swa_model.module.state_dict(), "metrics": swa_metrics},
                    self.checkpoint_dir / "swa_model.pth",
                )
                log_event("swa", val_acc=swa_metrics["val_acc"], loss=swa_metrics["loss"])

        if self.is_main_process:
            log_event("train_end", best_val_acc=self.best_val_acc)
        return dict(self.metrics_history)

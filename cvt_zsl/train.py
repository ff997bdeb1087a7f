"""CvT training entry point (supervised or zero-shot)."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import torch
import torch.distributed as dist
from torch.nn.parallel import DistributedDataParallel as DDP

from cvt_zsl.config import load_config, save_config
from cvt_zsl.data import create_dataloaders, create_zsl_dataloaders, get_dataset_info, load_zsl_split
from cvt_zsl.evaluation import evaluate_model, evaluate_zsl, save_metrics
from cvt_zsl.models import build_model
from cvt_zsl.runtime_log import log_event, setup_logging
from cvt_zsl.training import CvTTrainer, init_distributed, load_model_weights, seed_everything

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="CvT Training")
    parser.add_argument("config", type=str, help="Path to experiment config YAML")
    args = parser.parse_args()

    rank, world_size, device = init_distributed()
    config = load_config(args.config)
    setup_logging(config.logging, rank)
    seed_everything(config.seed, rank)

    output_dir = Path(config.output_dir) / config.experiment_name
    if rank == 0:
        output_dir.mkdir(parents=True, exist_ok=True)
        save_config(config, output_dir / "config.yaml")
        logger.info(f"Config {args.config}, world_size={world_size}, device={device}")

    if world_size > 1:
        dist.barrier()

    if config.zsl.enabled:
        split, semantics = load_zsl_split(config)
        num_classes = len(split.seen)
        model = build_model(config, device, num_classes=num_classes, semantic_dim=semantics.shape[1])
        model.set_class_embeddings(split.embeddings(semantics, "seen").to(device))
        loaders = create_zsl_dataloaders(config, split, world_size, rank, test_space="seen")
        train_loader, train_sampler, val_loader = loaders.train, loaders.train_sampler, loaders.test_seen
    else:
        num_classes = get_dataset_info(config.data.dataset)["num_classes"]
        model = build_model(config, device, num_classes=num_classes)
        train_loader, train_sampler, val_loader = create_dataloaders(config, world_size, rank)

    if config.checkpoint and not config.resume_from:
        if config.zsl.enabled:
            load_model_weights(
                model.backbone, config.checkpoint, map_location=device,
                strip_prefixes=("module.", "backbone."),
            )
        else:
            load_model_weights(model, config.checkpoint, map_location=device)

    if world_size > 1:
        model = DDP(model, device_ids=[device.index])

    trainer = CvTTrainer(model, config, device, num_classes, rank, world_size)

    start_epoch = 0
    if config.resume_from:
        start_epoch = trainer.load_checkpoint(config.resume_from)

    trainer.fit(train_loader, val_loader, train_sampler, start_epoch=start_epoch)

    if rank == 0:
        final_model = trainer.model_without_ddp
        if config.zsl.enabled:
            test_loaders = create_zsl_dataloaders(config, split, test_space="all")
            results, _, _ = evaluate_zsl(
                final_model, test_loaders.test_seen, test_loaders.test_unseen, device, split, semantics,
                gamma=config.zsl.calibration_gamma, curve_steps=config.zsl.ausuc_steps,
            )
        else:
            results = evaluate_model(
                final_model, val_loader, device, trainer.eval_criterion,
                num_classes=num_classes, progress=True,
            )
        results["best_val_acc"] = trainer.best_val_acc
        metrics_path = save_metrics(results, output_dir, config)
        log_event("final", **results)
        logger.info(f"Metrics written to {metrics_path}")

    if world_size > 1:
        dist.destroy_process_group()


if __name__ == "__main__":
    main()

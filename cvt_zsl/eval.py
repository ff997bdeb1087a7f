"""Standalone evaluation for a trained CvT checkpoint."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import torch
import torch.nn as nn
from torch.utils.data import DataLoader

from cvt_zsl.analysis.attention import AttentionAnalyzer
from cvt_zsl.config import load_config
from cvt_zsl.data import build_dataset, build_eval_transform, create_zsl_dataloaders, get_dataset_info, load_zsl_split
from cvt_zsl.evaluation import (
    collect_outputs,
    evaluate_eszsl,
    evaluate_model,
    evaluate_zsl,
    measure_efficiency,
    save_metrics,
)
from cvt_zsl.models import build_model
from cvt_zsl.runtime_log import log_event, setup_logging
from cvt_zsl.training import init_distributed

logger = logging.getLogger(__name__)


def _eval_loader(config, split_name: str, label_map=None) -> DataLoader:
    transform = build_eval_transform(config.model.img_size, config.data.mean, config.data.std)
    dataset = build_dataset(config.data.dataset, split_name, transform, label_map)
    return DataLoader(
        dataset,
        batch_size=config.data.batch_size,
        shuffle=False,
        num_workers=config.data.num_workers,
        pin_memory=torch.cuda.is_available(),
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="CvT Evaluation")
    parser.add_argument("config", type=str, help="Path to experiment config YAML")
    parser.add_argument("--efficiency", action="store_true", help="Also measure params, GFLOPs and throughput")
    parser.add_argument(
        "--attention-batches", type=int, default=0,
        help="Batches used for attention distance / entropy statistics (0 disables)",
    )
    args = parser.parse_args()

    _, _, device = init_distributed()
    config = load_config(args.config)
    setup_logging(config.logging)

    if not config.checkpoint:
        raise ValueError("config.checkpoint must be set for evaluation")

    if config.zsl.enabled:
        split, semantics = load_zsl_split(config)
        model = build_model(config, device, num_classes=len(split.seen), semantic_dim=semantics.shape[1])
        model.set_class_embeddings(split.embeddings(semantics, "seen").to(device))
    else:
        num_classes = get_dataset_info(config.data.dataset)["num_classes"]
        model = build_model(config, device, num_classes=num_classes)

    ckpt = torch.load(config.checkpoint, map_location=device, weights_only=False)
    model.load_state_dict(ckpt["model_state_dict"])
    logger.info(f"Loaded {config.checkpoint} (epoch {ckpt.get('epoch', -1) + 1})")

    if config.zsl.enabled:
        loaders = create_zsl_dataloaders(config, split, test_space="all")
        results, seen, unseen = evaluate_zsl(
            model, loaders.test_seen, loaders.test_unseen, device, split, semantics,
            gamma=config.zsl.calibration_gamma, curve_steps=config.zsl.ausuc_steps,
        )
        if config.zsl.run_eszsl:
            train = collect_outputs(
                model, _eval_loader(config, "train", split.label_map("seen")), device, progress=True,
            )
            eszsl = evaluate_eszsl(
                train.features, train.targets, seen, unseen, split, semantics,
                alpha=config.zsl.eszsl_alpha, gamma=config.zsl.eszsl_gamma,
                calibration_gamma=config.zsl.calibration_gamma, curve_steps=config.zsl.ausuc_steps,
            )
            results["eszsl"] = eszsl
            log_event("eszsl", **eszsl)
        analysis_loader = loaders.test_seen
    else:
        analysis_loader = _eval_loader(config, "val")
        results = evaluate_model(
            model, analysis_loader, device, nn.CrossEntropyLoss(),
            num_classes=num_classes, progress=True,
        )

    if args.efficiency:
        results["efficiency"] = measure_efficiency(
            model, device, image_size=config.model.img_size, in_channels=config.model.in_channels,
        )

    if args.attention_batches > 0:
        analyzer = AttentionAnalyzer(model, device)
        results["attention"] = analyzer.analyze(analysis_loader, num_batches=args.attention_batches)

    output_dir = Path(config.output_dir) / config.experiment_name / "eval"
    metrics_path = save_metrics(results, output_dir, config)
    log_event("eval", checkpoint=config.checkpoint, metrics_path=str(metrics_path))
    logger.info(f"Metrics written to {metrics_path}")


if __name__ == "__main__":
    main()

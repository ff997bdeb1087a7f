"""
Tests for the training engine.

Verifies:
1. Parameter groups exclude norms, biases, class tokens and the logit scale from decay
2. fit() runs end to end on CPU, writes checkpoints and can resume
3. MixUp/CutMix, SWA and zero-shot training paths run
4. Early stopping and seeding behave
"""
import dataclasses
import random

import numpy as np
import pytest
import torch
from torch.utils.data import DataLoader, TensorDataset

from conftest import tiny_stages


def _config(tmp_path, **training):
    from cvt_zsl.config import DataConfig, ExperimentConfig, ModelConfig, TrainingConfig
    defaults = dict(
        num_epochs=2, learning_rate=1e-3, mixup_alpha=0.0, cutmix_alpha=0.0,
        autocast_dtype="float32", checkpoint_every=1, early_stopping_patience=10,
    )
    defaults.update(training)
    return ExperimentConfig(
        experiment_name="unit",
        output_dir=str(tmp_path),
        data=DataConfig(batch_size=4, num_workers=0),
        model=ModelConfig(name="tiny", num_classes=2, img_size=32, stages=tiny_stages()),
        training=TrainingConfig(**defaults),
    )


def _loader(num_classes=2, n=8):
    g = torch.Generator().manual_seed(0)
    images = torch.randn(n, 3, 32, 32, generator=g)
    labels = torch.arange(n) % num_classes
    return DataLoader(TensorDataset(images, labels), batch_size=4, shuffle=False)


def _model(config):
    from cvt_zsl.models import build_model
    return build_model(config, torch.device("cpu"))


class TestParamGroups:

    def test_groups(self):
        from cvt_zsl.config import ModelConfig
        from cvt_zsl.models import ConvolutionalVisionTransformer, ZeroShotCvT
        from cvt_zsl.training import build_param_groups

        model = ZeroShotCvT(
            ConvolutionalVisionTransformer(ModelConfig(num_classes=2, img_size=32, stages=tiny_stages())),
            semantic_dim=4,
        )
        decay, no_decay = build_param_groups(model, 0.05)
        assert decay["weight_decay"] == 0.05
        assert no_decay["weight_decay"] == 0.0

        no_decay_ids = {id(p) for p in no_decay["params"]}
        assert id(model.backbone.stages[1].cls_token) in no_decay_ids
        assert id(model.head.logit_scale) in no_decay_ids
        assert id(model.backbone.stages[0].patch_embed.norm.weight) in no_decay_ids
        assert all(p.ndim > 1 for p in decay["params"])
        total = len(decay["params"]) + len(no_decay["params"])
        assert total == len(list(model.parameters()))


class TestTrainer:

    def test_fit_writes_checkpoints(self, tmp_path):
        from cvt_zsl.training import CvTTrainer
        config = _config(tmp_path)
        trainer = CvTTrainer(_model(config), config, torch.device("cpu"), num_classes=2)
        history = trainer.fit(_loader(), _loader())

        assert len(history["train_loss"]) == 2
        assert len(history["val_acc"]) == 2
        assert all(np.isfinite(history["train_loss"]))
        assert (trainer.checkpoint_dir / "checkpoint_epoch_1.pth").exists()
        assert (trainer.checkpoint_dir / "checkpoint_epoch_2.pth").exists()

    def test_resume(self, tmp_path):
        from cvt_zsl.training import CvTTrainer
        config = _config(tmp_path)
        trainer = CvTTrainer(_model(config), config, torch.device("cpu"), num_classes=2)
        trainer.fit(_loader(), _loader())

        resumed = CvTTrainer(_model(config), config, torch.device("cpu"), num_classes=2)
        start_epoch = resumed.load_checkpoint(trainer.checkpoint_dir / "checkpoint_epoch_1.pth")
        assert start_epoch == 1
        assert len(resumed.metrics_history["train_loss"]) == 1
        resumed.fit(_loader(), _loader(), start_epoch=start_epoch)
        assert len(resumed.metrics_history["train_loss"]) == 2

    def test_mixup_cutmix(self, tmp_path):
        from cvt_zsl.training import CvTTrainer
        config = _config(tmp_path, num_epochs=1, mixup_alpha=0.8, cutmix_alpha=1.0)
        trainer = CvTTrainer(_model(config), config, torch.device("cpu"), num_classes=2)
        assert trainer.mixup_cutmix is not None
        metrics = trainer.train_epoch(_loader())
        assert np.isfinite(metrics["train_loss"])
        assert metrics["total_samples"] == 8

    def test_swa(self, tmp_path):
        from cvt_zsl.training import CvTTrainer
        config = _config(tmp_path, swa_start_epoch=0.5)
        trainer = CvTTrainer(_model(config), config, torch.device("cpu"), num_classes=2)
        assert trainer.use_swa
        history = trainer.fit(_loader(), _loader())
        assert len(history["swa_val_acc"]) == 1
        assert (trainer.checkpoint_dir / "swa_model.pth").exists()

    def test_zero_shot_training(self, tmp_path):
        from cvt_zsl.config import ZSLConfig
        from cvt_zsl.models import build_model
        from cvt_zsl.training import CvTTrainer
        config = dataclasses.replace(_config(tmp_path, num_epochs=1), zsl=ZSLConfig(enabled=True))
        model = build_model(config, torch.device("cpu"), semantic_dim=5)
        model.set_class_embeddings(torch.randn(2, 5))
        trainer = CvTTrainer(model, config, torch.device("cpu"), num_classes=2)
        history = trainer.fit(_loader(), _loader())
        assert len(history["val_acc"]) == 1

    def test_early_stopping(self, tmp_path):
        from cvt_zsl.training import CvTTrainer
        config = _config(tmp_path, early_stopping_patience=2, early_stopping_min_delta=0.01)
        trainer = CvTTrainer(_model(config), config, torch.device("cpu"), num_classes=2)
        assert not trainer.should_early_stop(1.0)
        assert not trainer.should_early_stop(0.995)
        assert trainer.should_early_stop(0.999)
        assert not trainer.should_early_stop(0.5)

    def test_non_finite_loss(self, tmp_path):
        from cvt_zsl.training import CvTTrainer
        config = _config(tmp_path)
        trainer = CvTTrainer(_model(config), config, torch.device("cpu"), num_classes=2)
        images = torch.full((4, 3, 32, 32), float("nan"))
        loader = DataLoader(TensorDataset(images, torch.tensor([0, 1, 0, 1])), batch_size=4)
        with pytest.raises(FloatingPointError):
            trainer.train_epoch(loader)


class TestRuntime:

    def test_single_process_without_torchrun(self, monkeypatch):
        from cvt_zsl.training import init_distributed
        monkeypatch.delenv("RANK", raising=False)
        rank, world_size, device = init_distributed()
        assert (rank, world_size) == (0, 1)
        assert device.type in ("cpu", "cuda")

    def test_seed_everything(self):
        from cvt_zsl.training import seed_everything

        seed_everything(12345)
        first = (random.random(), np.random.rand(), torch.rand(1).item())
        seed_everything(12345)
        second = (random.random(), np.random.rand(), torch.rand(1).item())
        assert first == second

        seed_everything(12345, rank=1)
        assert torch.rand(1).item() != first[2]

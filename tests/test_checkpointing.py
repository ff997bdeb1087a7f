"""
Tests for checkpoint persistence.

Verifies:
1. Checkpoints carry RNG state and restoring it reproduces random draws
2. load_model_weights skips the head and shape mismatches
3. Zero-shot checkpoints can initialize a plain backbone
"""
import random

import numpy as np
import torch

from conftest import tiny_stages


def _cvt(num_classes):
    from cvt_zsl.config import ModelConfig
    from cvt_zsl.models import ConvolutionalVisionTransformer
    return ConvolutionalVisionTransformer(ModelConfig(num_classes=num_classes, img_size=32, stages=tiny_stages()))


class TestCheckpointRNGState:

    def test_trainer_checkpoint_contains_rng_state(self, tmp_path):
        from cvt_zsl.config import ExperimentConfig, ModelConfig
        from cvt_zsl.training import CvTTrainer

        config = ExperimentConfig(
            experiment_name='ckpt', output_dir=str(tmp_path),
            model=ModelConfig(name='tiny', num_classes=3, img_size=32, stages=tiny_stages()),
        )
        trainer = CvTTrainer(_cvt(3), config, torch.device('cpu'), num_classes=3)
        path = trainer.save_checkpoint('state.pth', epoch=0, metrics={'loss': 0.5})
        checkpoint = torch.load(path, weights_only=False)

        assert {'torch', 'numpy', 'python'} <= set(checkpoint['rng_state'])
        assert {'model_state_dict', 'optimizer_state_dict', 'scheduler_state_dict'} <= set(checkpoint)
        assert 'swa_model_state_dict' not in checkpoint
        assert checkpoint['metrics'] == {'loss': 0.5}

    def test_restore_reproduces_draws(self):
        from cvt_zsl.training import capture_rng_state, restore_rng_state

        checkpoint = {'rng_state': capture_rng_state()}
        expected = (random.random(), np.random.rand(), torch.rand(1).item())

        restore_rng_state(checkpoint)
        assert (random.random(), np.random.rand(), torch.rand(1).item()) == expected

    def test_restore_without_state_is_noop(self):
        from cvt_zsl.training import restore_rng_state
        restore_rng_state({})


class TestLoadModelWeights:

    def test_head_excluded(self, tmp_path):
        from cvt_zsl.training import load_model_weights
        source = _cvt(10)
        torch.save({'model_state_dict': source.state_dict()}, tmp_path / 'ckpt.pth')

        target = _cvt(3)
        head_before = target.head.weight.clone()
        skipped = load_model_weights(target, tmp_path / 'ckpt.pth')

        assert set(skipped) == {'head.weight', 'head.bias'}
        assert torch.equal(target.head.weight, head_before)
        assert torch.equal(target.stages[0].patch_embed.proj.weight, source.stages[0].patch_embed.proj.weight)

    def test_shape_mismatch_skipped_without_exclude(self, tmp_path):
        from cvt_zsl.training import load_model_weights
        torch.save(_cvt(10).state_dict(), tmp_path / 'bare.pth')
        skipped = load_model_weights(_cvt(3), tmp_path / 'bare.pth', exclude=())
        assert set(skipped) == {'head.weight', 'head.bias'}

    def test_zero_shot_checkpoint_into_backbone(self, tmp_path):
        from cvt_zsl.models import ZeroShotCvT
        from cvt_zsl.training import load_model_weights
        source = ZeroShotCvT(_cvt(4), semantic_dim=6)
        torch.save({'model_state_dict': source.state_dict()}, tmp_path / 'zsl.pth')

        target = _cvt(0)
        load_model_weights(target, tmp_path / 'zsl.pth', strip_prefixes=('module.', 'backbone.'))
        assert torch.equal(target.stages[1].cls_token, source.backbone.stages[1].cls_token)

    def test_ddp_prefix_stripped(self, tmp_path):
        from cvt_zsl.training import load_model_weights
        source = _cvt(3)
        state = {f'module.{k}': v for k, v in source.state_dict().items()}
        torch.save({'model_state_dict': state}, tmp_path / 'ddp.pth')

        target = _cvt(3)
        skipped = load_model_weights(target, tmp_path / 'ddp.pth', exclude=())
        assert skipped == []
        assert torch.equal(target.head.weight, source.head.weight)

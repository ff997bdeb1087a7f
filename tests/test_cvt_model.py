"""
Tests for the CvT backbone.

Verifies:
1. Output shapes with and without a class token
2. Key/value grids shrink by stride_kv and match the attention maps
3. Every q/k/v projection method runs
4. Weight-decay exclusions and classifier reset
"""

import pytest
import torch

from conftest import tiny_stages


class TestConvOutputSize:

    def test_conv_matches_pytorch(self):
        from cvt_zsl.models.cvt import conv_output_size
        conv = torch.nn.Conv2d(1, 1, 7, stride=4, padding=2)
        for size in (32, 33, 56, 224):
            out = conv(torch.zeros(1, 1, size, size))
            assert conv_output_size(size, 7, 4, 2) == out.shape[-1]

    def test_ceil_mode_matches_avg_pool(self):
        from cvt_zsl.models.cvt import conv_output_size
        pool = torch.nn.AvgPool2d(3, 2, 1, ceil_mode=True)
        for size in (4, 7, 8, 14, 15):
            out = pool(torch.zeros(1, 1, size, size))
            assert conv_output_size(size, 3, 2, 1, ceil_mode=True) == out.shape[-1]


class TestCvTForward:

    def test_logits_and_features_shape(self, tiny_model_config):
        from cvt_zsl.models import ConvolutionalVisionTransformer
        model = ConvolutionalVisionTransformer(tiny_model_config)
        out = model(torch.randn(2, 3, 32, 32))
        assert out.logits.shape == (2, 5)
        assert out.features.shape == (2, 32)
        assert out.attention_maps == {}

    def test_without_cls_token_uses_mean_pooling(self):
        from cvt_zsl.config import ModelConfig
        from cvt_zsl.models import ConvolutionalVisionTransformer
        config = ModelConfig(num_classes=3, img_size=32, stages=tiny_stages(with_cls_token=False))
        model = ConvolutionalVisionTransformer(config)
        assert not model.use_cls_token
        assert model.no_weight_decay() == set()
        out = model(torch.randn(2, 3, 32, 32))
        assert out.logits.shape == (2, 3)

    def test_single_image_in_eval_mode(self, tiny_model_config):
        from cvt_zsl.models import ConvolutionalVisionTransformer
        model = ConvolutionalVisionTransformer(tiny_model_config).eval()
        out = model(torch.randn(1, 3, 32, 32))
        assert out.logits.shape == (1, 5)

    def test_non_square_input(self, tiny_model_config):
        from cvt_zsl.models import ConvolutionalVisionTransformer
        model = ConvolutionalVisionTransformer(tiny_model_config)
        out = model(torch.randn(2, 3, 32, 48))
        assert out.logits.shape == (2, 5)

    @pytest.mark.parametrize("method", ["dw_bn", "avg", "linear"])
    def test_projection_methods(self, method):
        from cvt_zsl.config import ModelConfig
        from cvt_zsl.models import ConvolutionalVisionTransformer
        config = ModelConfig(num_classes=4, img_size=32, stages=tiny_stages(qkv_method=method))
        model = ConvolutionalVisionTransformer(config)
        out = model(torch.randn(2, 3, 32, 32))
        assert out.logits.shape == (2, 4)
        assert torch.isfinite(out.logits).all()

    def test_backward_reaches_cls_token(self, tiny_model_config):
        from cvt_zsl.models import ConvolutionalVisionTransformer
        model = ConvolutionalVisionTransformer(tiny_model_config)
        model(torch.randn(2, 3, 32, 32)).logits.sum().backward()
        assert model.stages[1].cls_token.grad is not None


class TestAttentionMaps:

    @pytest.mark.parametrize("method", ["dw_bn", "avg", "linear"])
    def test_attention_shapes_follow_grids(self, method):
        from cvt_zsl.config import ModelConfig
        from cvt_zsl.models import ConvolutionalVisionTransformer
        config = ModelConfig(num_classes=4, img_size=32, stages=tiny_stages(qkv_method=method))
        model = ConvolutionalVisionTransformer(config).eval()
        out = model(torch.randn(2, 3, 32, 32), return_attention=True)

        assert set(out.attention_maps) == {(0, 0), (1, 0), (1, 1)}

        # 32x32 input -> 8x8 tokens in stage 0, 4x4 in stage 1
        for (stage_idx, block_idx), attn in out.attention_maps.items():
            h = w = 8 if stage_idx == 0 else 4
            block = model.stages[stage_idx].blocks[block_idx]
            qh, qw = block.attn.q_grid(h, w)
            kh, kw = block.attn.kv_grid(h, w)
            extra = 1 if model.stages[stage_idx].cls_token is not None else 0
            assert attn.shape == (2, block.attn.num_heads, qh * qw + extra, kh * kw + extra)
            assert torch.allclose(attn.sum(dim=-1), torch.ones(attn.shape[:-1]), atol=1e-5)

    def test_dw_bn_halves_key_grid(self):
        from cvt_zsl.models.cvt import ConvAttention
        attn = ConvAttention(16, 16, num_heads=2, stride_kv=2)
        assert attn.q_grid(8, 8) == (8, 8)
        assert attn.kv_grid(8, 8) == (4, 4)

    def test_scale_uses_full_width(self):
        from cvt_zsl.models.cvt import ConvAttention
        attn = ConvAttention(16, 64, num_heads=4)
        assert attn.scale == pytest.approx(64 ** -0.5)

    def test_indivisible_heads_rejected(self):
        from cvt_zsl.models.cvt import ConvAttention
        with pytest.raises(ValueError):
            ConvAttention(16, 30, num_heads=4)


class TestModelSurface:

    def test_cls_token_only_on_last_stage(self):
        import dataclasses
        from cvt_zsl.config import ModelConfig
        from cvt_zsl.models import ConvolutionalVisionTransformer
        stages = tiny_stages()
        stages[0] = dataclasses.replace(stages[0], with_cls_token=True)
        with pytest.raises(ValueError):
            ConvolutionalVisionTransformer(ModelConfig(stages=stages))

    def test_empty_stages_rejected(self):
        from cvt_zsl.config import ModelConfig
        from cvt_zsl.models import ConvolutionalVisionTransformer
        with pytest.raises(ValueError):
            ConvolutionalVisionTransformer(ModelConfig(stages=[]))

    def test_no_weight_decay_names_cls_token(self, tiny_model_config):
        from cvt_zsl.models import ConvolutionalVisionTransformer
        model = ConvolutionalVisionTransformer(tiny_model_config)
        names = dict(model.named_parameters())
        assert model.no_weight_decay() == {"stages.1.cls_token"}
        assert "stages.1.cls_token" in names

    def test_reset_classifier(self, tiny_model_config):
        from cvt_zsl.models import ConvolutionalVisionTransformer
        model = ConvolutionalVisionTransformer(tiny_model_config)
        model.reset_classifier(7)
        assert model(torch.randn(2, 3, 32, 32)).logits.shape == (2, 7)
        model.reset_classifier(0)
        out = model(torch.randn(2, 3, 32, 32))
        assert torch.equal(out.logits, out.features)

    def test_forward_features(self, tiny_model_config):
        from cvt_zsl.models import ConvolutionalVisionTransformer
        model = ConvolutionalVisionTransformer(tiny_model_config).eval()
        x = torch.randn(2, 3, 32, 32)
        assert torch.allclose(model.forward_features(x), model(x).features)

    def test_drop_path_identity_in_eval(self):
        from cvt_zsl.models.cvt import DropPath
        drop = DropPath(0.5).eval()
        x = torch.randn(4, 10, 8)
        assert torch.equal(drop(x), x)

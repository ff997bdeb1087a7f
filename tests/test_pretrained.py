"""
Tests for the hub inference wrapper, using a tiny randomly initialized CvT
built locally instead of a downloaded checkpoint.
"""
import pytest
import torch
from PIL import Image


def _tiny_pretrained(cls_token_last=True, num_labels=4):
    from transformers import ConvNextImageProcessor, CvtConfig, CvtForImageClassification
    from cvt_zsl.pretrained import PretrainedCvT

    config = CvtConfig(
        num_channels=3,
        patch_sizes=[7, 3],
        patch_stride=[4, 2],
        patch_padding=[2, 1],
        embed_dim=[16, 32],
        num_heads=[1, 2],
        depth=[1, 1],
        mlp_ratio=[4.0, 4.0],
        attention_drop_rate=[0.0, 0.0],
        drop_rate=[0.0, 0.0],
        drop_path_rate=[0.0, 0.0],
        qkv_bias=[True, True],
        cls_token=[False, cls_token_last],
        qkv_projection_method=["dw_bn", "dw_bn"],
        kernel_qkv=[3, 3],
        padding_kv=[1, 1],
        stride_kv=[2, 2],
        padding_q=[1, 1],
        stride_q=[1, 1],
        num_labels=num_labels,
        id2label={i: f"class_{i}" for i in range(num_labels)},
        label2id={f"class_{i}": i for i in range(num_labels)},
    )
    model = CvtForImageClassification(config).eval()
    processor = ConvNextImageProcessor(size={"shortest_edge": 32}, crop_pct=0.875)
    return PretrainedCvT(
        processor=processor,
        model=model,
        id2label={int(k): v for k, v in model.config.id2label.items()},
        device=torch.device("cpu"),
    )


def _images(n=2):
    return [Image.new("RGB", (48, 40), (30 * i, 100, 200)) for i in range(n)]


class TestClassifyImages:

    def test_top_k_sorted(self):
        from cvt_zsl.pretrained import classify_images
        predictions = classify_images(_tiny_pretrained(), _images(), top_k=3)
        assert len(predictions) == 2
        for row in predictions:
            assert len(row) == 3
            probs = [p for _, p in row]
            assert probs == sorted(probs, reverse=True)
            assert all(label.startswith("class_") for label, _ in row)
            assert sum(probs) <= 1.0 + 1e-5

    def test_top_k_capped(self):
        from cvt_zsl.pretrained import classify_images
        predictions = classify_images(_tiny_pretrained(num_labels=4), _images(1), top_k=10)
        assert len(predictions[0]) == 4
        assert sum(p for _, p in predictions[0]) == pytest.approx(1.0, abs=1e-5)

    def test_image_paths(self, tmp_path):
        from cvt_zsl.pretrained import classify_images
        path = tmp_path / "image.png"
        _images(1)[0].convert("L").save(path)
        predictions = classify_images(_tiny_pretrained(), [path], top_k=1)
        assert len(predictions) == 1

    def test_no_images(self):
        from cvt_zsl.pretrained import classify_images
        with pytest.raises(ValueError):
            classify_images(_tiny_pretrained(), [])


class TestExtractFeatures:

    @pytest.mark.parametrize("cls_token_last", [True, False])
    def test_feature_shape(self, cls_token_last):
        from cvt_zsl.pretrained import extract_features
        features = extract_features(_tiny_pretrained(cls_token_last), _images(3))
        assert features.shape == (3, 32)
        assert torch.isfinite(features).all()

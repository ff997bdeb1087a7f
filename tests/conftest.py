import pytest


def tiny_stages(with_cls_token=True, qkv_method="dw_bn"):
    from cvt_zsl.config import StageConfig

    return [
        StageConfig(
            patch_size=7, patch_stride=4, patch_padding=2,
            embed_dim=16, depth=1, num_heads=1, qkv_method=qkv_method,
        ),
        StageConfig(
            patch_size=3, patch_stride=2, patch_padding=1,
            embed_dim=32, depth=2, num_heads=2, qkv_method=qkv_method,
            with_cls_token=with_cls_token,
        ),
    ]


@pytest.fixture
def tiny_model_config():
    from cvt_zsl.config import ModelConfig

    return ModelConfig(name="tiny", num_classes=5, img_size=32, stages=tiny_stages())


def image_tree(root, classes=("ant", "bee", "cat", "dog", "eel"), per_class=2, splits=("train", "val"), size=40):
    """Write a small ImageFolder tree of solid-color PNGs under ``root``."""
    from PIL import Image
    for split in splits:
        for i, name in enumerate(classes):
            folder = root / split / name
            folder.mkdir(parents=True)
            for j in range(per_class):
                color = (40 * i, 20 * j, 255 - 40 * i)
                Image.new("RGB", (size, size), color).save(folder / f"{j}.png")
    return root

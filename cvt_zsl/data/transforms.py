from __future__ import annotations

import torch
from torchvision.transforms.v2 import (
    CenterCrop,
    Compose,
    InterpolationMode,
    Normalize,
    RandomErasing,
    RandomHorizontalFlip,
    RandomResizedCrop,
    Resize,
    ToDtype,
    ToImage,
    TrivialAugmentWide,
)

__all__ = ["build_train_transform", "build_eval_transform", "EVAL_CROP_PCT"]

EVAL_CROP_PCT = 0.875


def build_train_transform(
    image_size: int,
    mean: tuple[float, ...],
    std: tuple[float, ...],
) -> Compose:
    return Compose([
        RandomResizedCrop(image_size, interpolation=InterpolationMode.BICUBIC),
        RandomHorizontalFlip(),
        TrivialAugmentWide(),
        ToImage(),
        ToDtype(torch.float32, scale=True),
        Normalize(mean, std),
        RandomErasing(p=0.25),
    ])


def build_eval_transform(
    image_size: int,
    mean: tuple[float, ...],
    std: tuple[float, ...],
) -> Compose:
    return Compose([
        Resize(int(image_size / EVAL_CROP_PCT), interpolation=InterpolationMode.BICUBIC),
        CenterCrop(image_size),
        ToImage(),
        ToDtype(torch.float32, scale=True),
        Normalize(mean, std),
    ])

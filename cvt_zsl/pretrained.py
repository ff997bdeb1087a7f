"""Pretrained CvT checkpoints from the Hugging Face hub (inference only)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NamedTuple, Sequence

import torch
from PIL import Image
from transformers import AutoImageProcessor, CvtForImageClassification

logger = logging.getLogger(__name__)

__all__ = [
    "PretrainedCvT",
    "load_pretrained_cvt",
    "classify_images",
    "extract_features",
    "HUB_MODELS",
]

HUB_MODELS = (
    "microsoft/cvt-13",
    "microsoft/cvt-13-384",
    "microsoft/cvt-13-384-22k",
    "microsoft/cvt-21",
    "microsoft/cvt-21-384",
    "microsoft/cvt-21-384-22k",
    "microsoft/cvt-w24-384-22k",
)


class PretrainedCvT(NamedTuple):
    processor: AutoImageProcessor
    model: CvtForImageClassification
    id2label: dict[int, str]
    device: torch.device


def load_pretrained_cvt(
    model_id: str = "microsoft/cvt-13",
    device: torch.device | None = None,
) -> PretrainedCvT:
    device = device or torch.device("cuda" if torch.cuda.is_available() else "cpu")
    processor = AutoImageProcessor.from_pretrained(model_id)
    model = CvtForImageClassification.from_pretrained(model_id).to(device)
    model.eval()
    logger.info(f"Loaded {model_id} ({sum(p.numel() for p in model.parameters()) / 1e6:.1f}M params) on {device}")
    return PretrainedCvT(
        processor=processor,
        model=model,
        id2label={int(k): v for k, v in model.config.id2label.items()},
        device=device,
    )


def _open_images(images: Sequence[Image.Image | str | Path]) -> list[Image.Image]:
    opened = []
    for image in images:
        if isinstance(image, (str, Path)):
            with Image.open(image) as f:
                image = f.convert("RGB")
        else:
            image = image.convert("RGB")
        opened.append(image)
    return opened


def _pixel_values(pretrained: PretrainedCvT, images: Sequence[Image.Image | str | Path]) -> torch.Tensor:
    if not images:
        raise ValueError("No images given")
    inputs = pretrained.processor(images=_open_images(images), return_tensors="pt")
    return inputs["pixel_values"].to(pretrained.device)


@torch.no_grad()
def classify_images(
    pretrained: PretrainedCvT,
    images: Sequence[Image.Image | str | Path],
    top_k: int = 5,
) -> list[list[tuple[str, float]]]:
    """Top-k (label, probability) pairs per image, most probable first."""
    logits = pretrained.model(pixel_values=_pixel_values(pretrained, images)).logits
    probs = logits.softmax(dim=-1)
    values, indices = probs.topk(min(top_k, probs.shape[-1]), dim=-1)
    return [
        [(pretrained.id2label[i], p) for i, p in zip(row_idx.tolist(), row_val.tolist())]
        for row_idx, row_val in zip(indices, values)
    ]


@torch.no_grad()
def extract_features(
    pretrained: PretrainedCvT,
    images: Sequence[Image.Image | str | Path],
) -> torch.Tensor:
    """Pooled pre-classifier features, shape (num_images, hidden_dim)."""
    model = pretrained.model
    outputs = model.cvt(pixel_values=_pixel_values(pretrained, images))
    if model.config.cls_token[-1]:
        tokens = model.layernorm(outputs.cls_token_value)
    else:
        hidden = outputs.last_hidden_state
        B, C, H, W = hidden.shape
        tokens = model.layernorm(hidden.view(B, C, H * W).permute(0, 2, 1))
    return tokens.mean(dim=1)

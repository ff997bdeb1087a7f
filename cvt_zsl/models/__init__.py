"""CvT models, presets and the zero-shot head."""

from __future__ import annotations

import dataclasses
from typing import Any

import torch

from cvt_zsl.config import CVT_PRESETS, ExperimentConfig, ModelConfig, _dict_to_dataclass
from cvt_zsl.models.cvt import ConvolutionalVisionTransformer, CvTOutput
from cvt_zsl.models.registry import create_model, is_model_registered, list_models, register_model
from cvt_zsl.models.zsl import ESZSL, SemanticEmbeddingHead, ZeroShotCvT

__all__ = [
    "ConvolutionalVisionTransformer",
    "CvTOutput",
    "ZeroShotCvT",
    "SemanticEmbeddingHead",
    "ESZSL",
    "build_model",
    "create_model",
    "list_models",
    "register_model",
    "is_model_registered",
]


def _preset_factory(preset: str):
    def factory(config: ModelConfig | dict[str, Any]) -> ConvolutionalVisionTransformer:
        if isinstance(config, dict):
            config = _dict_to_dataclass(ModelConfig, config)
        if not config.stages:
            config = dataclasses.replace(config, stages=list(CVT_PRESETS[preset]))
        return ConvolutionalVisionTransformer(config)
    return factory


for _name in CVT_PRESETS:
    register_model(_name)(_preset_factory(_name))


def build_model(
    config: ExperimentConfig,
    device: torch.device,
    *,
    num_classes: int | None = None,
    semantic_dim: int | None = None,
) -> ConvolutionalVisionTransformer | ZeroShotCvT:
    """Construct the model described by ``config``.

    With ZSL enabled the CvT head is replaced by a semantic embedding head of
    width ``semantic_dim`` (``config.zsl.semantic_dim`` when not given).
    """
    model_config = config.model
    if num_classes is not None:
        model_config = dataclasses.replace(model_config, num_classes=num_classes)

    if is_model_registered(model_config.name):
        backbone = create_model(model_config.name, model_config)
    else:
        backbone = ConvolutionalVisionTransformer(model_config)

    if not config.zsl.enabled:
        return backbone.to(device)

    semantic_dim = semantic_dim or config.zsl.semantic_dim
    if not semantic_dim:
        raise ValueError("ZSL model needs a semantic dimension (zsl.semantic_dim or the attribute matrix)")
    return ZeroShotCvT(backbone, semantic_dim, config.zsl.temperature).to(device)

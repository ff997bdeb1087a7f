"""Configuration schema and YAML IO for CvT / zero-shot experiments."""

from __future__ import annotations

import dataclasses
import typing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, get_type_hints

import yaml

QKV_METHODS = ("dw_bn", "avg", "linear")
INIT_METHODS = ("trunc_norm", "xavier")

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class StageConfig:
    patch_size: int = 7
    patch_stride: int = 4
    patch_padding: int = 2
    embed_dim: int = 64
    depth: int = 1
    num_heads: int = 1
    mlp_ratio: float = 4.0
    qkv_bias: bool = True
    drop_rate: float = 0.0
    attn_drop_rate: float = 0.0
    drop_path_rate: float = 0.0
    with_cls_token: bool = False
    qkv_method: str = "dw_bn"
    kernel_qkv: int = 3
    padding_q: int = 1
    padding_kv: int = 1
    stride_q: int = 1
    stride_kv: int = 2


@dataclass(frozen=True)
class ModelConfig:
    name: str = "cvt_13"
    in_channels: int = 3
    num_classes: int = 1000
    img_size: int = 224
    init: str = "trunc_norm"
    stages: list[StageConfig] = field(default_factory=list)


@dataclass(frozen=True)
class DataConfig:
    dataset: str = ""
    batch_size: int = 128
    num_workers: int = 8
    attributes: str | None = None
    class_names: str | None = None
    unseen_classes: list[str] | str | None = None
    mean: tuple[float, ...] = IMAGENET_MEAN
    std: tuple[float, ...] = IMAGENET_STD


@dataclass(frozen=True)
class ZSLConfig:
    enabled: bool = False
    semantic_dim: int = 0
    temperature: float = 0.05
    normalize_attributes: bool = True
    calibration_gamma: float = 0.0
    ausuc_steps: int = 200
    run_eszsl: bool = False
    eszsl_alpha: float = 3.0
    eszsl_gamma: float = 0.0


@dataclass(frozen=True)
class TrainingConfig:
    num_epochs: int = 300
    learning_rate: float = 5e-4
    weight_decay: float = 0.05
    warmup_fraction: float = 0.02
    label_smoothing: float = 0.1
    mixup_alpha: float = 0.8
    cutmix_alpha: float = 1.0
    early_stopping_patience: int = 20
    early_stopping_min_delta: float = 0.001
    swa_start_epoch: float = 1.0
    swa_lr: float = 1e-4
    grad_clip_norm: float = 5.0
    cosine_eta_min: float = 1e-5
    autocast_dtype: str = "bfloat16"
    checkpoint_every: int = 10


@dataclass(frozen=True)
class LoggingConfig:
    log_level: str = "INFO"
    log_dir: str = "./logs"


@dataclass(frozen=True)
class ExperimentConfig:
    seed: int = 42
    experiment_name: str = "cvt_13_imagenet"
    output_dir: str = "./outputs"
    resume_from: str | None = None
    checkpoint: str | None = None
    data: DataConfig = field(default_factory=DataConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    zsl: ZSLConfig = field(default_factory=ZSLConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _stage_list(
    depths: tuple[int, ...],
    dims: tuple[int, ...],
    heads: tuple[int, ...],
    drop_path_rate: float = 0.1,
) -> list[StageConfig]:
    patch = ((7, 4, 2), (3, 2, 1), (3, 2, 1))
    stages = []
    for i, (depth, dim, num_heads) in enumerate(zip(depths, dims, heads)):
        last = i == len(depths) - 1
        stages.append(StageConfig(
            patch_size=patch[i][0],
            patch_stride=patch[i][1],
            patch_padding=patch[i][2],
            embed_dim=dim,
            depth=depth,
            num_heads=num_heads,
            drop_path_rate=drop_path_rate if last else 0.0,
            with_cls_token=last,
        ))
    return stages


CVT_PRESETS: dict[str, list[StageConfig]] = {
    "cvt_13": _stage_list((1, 2, 10), (64, 192, 384), (1, 3, 6)),
    "cvt_21": _stage_list((1, 4, 16), (64, 192, 384), (1, 3, 6)),
    "cvt_w24": _stage_list((2, 2, 20), (192, 768, 1024), (3, 12, 16), drop_path_rate=0.3),
}


def _build_field(ft: Any, value: Any) -> Any:
    if dataclasses.is_dataclass(ft) and isinstance(value, dict):
        return _dict_to_dataclass(ft, value)
    if typing.get_origin(ft) is list and isinstance(value, list):
        (item_type,) = typing.get_args(ft)
        return [_build_field(item_type, item) for item in value]
    if typing.get_origin(ft) is tuple and isinstance(value, list):
        return tuple(value)
    return value


def _dict_to_dataclass(cls: type, data: dict[str, Any]) -> Any:
    """Recursively convert a dict to a frozen dataclass instance."""
    hints = get_type_hints(cls)
    field_types = {f.name: hints[f.name] for f in dataclasses.fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in field_types:
            raise ValueError(f"Unknown config key '{key}' for {cls.__name__}")
        kwargs[key] = _build_field(field_types[key], value)
    return cls(**kwargs)


def resolve_stages(model_config: ModelConfig) -> ModelConfig:
    """Fill ``stages`` from the preset named by ``model_config.name`` when empty."""
    if model_config.stages:
        return model_config
    if model_config.name not in CVT_PRESETS:
        raise ValueError(
            f"Unknown CvT preset: {model_config.name}. "
            f"Registered: {list(CVT_PRESETS)}"
        )
    return dataclasses.replace(model_config, stages=list(CVT_PRESETS[model_config.name]))


def validate_config(config: ExperimentConfig) -> None:
    model = config.model
    if not model.stages:
        raise ValueError("model.stages is empty; call resolve_stages() first")
    if model.init not in INIT_METHODS:
        raise ValueError(f"Unknown init '{model.init}'. Expected one of {INIT_METHODS}")

    last = len(model.stages) - 1
    for i, stage in enumerate(model.stages):
        if stage.depth < 1:
            raise ValueError(f"Stage {i}: depth must be positive, got {stage.depth}")
        if stage.embed_dim % stage.num_heads != 0:
            raise ValueError(
                f"Stage {i}: embed_dim {stage.embed_dim} is not divisible "
                f"by num_heads {stage.num_heads}"
            )
        if stage.qkv_method not in QKV_METHODS:
            raise ValueError(
                f"Stage {i}: unknown qkv_method '{stage.qkv_method}'. "
                f"Expected one of {QKV_METHODS}"
            )
        if stage.with_cls_token and i != last:
            raise ValueError(f"Stage {i}: only the last stage may carry a class token")

    if config.zsl.enabled and not config.data.attributes:
        raise ValueError("zsl.enabled requires data.attributes")
    if config.zsl.temperature <= 0:
        raise ValueError("zsl.temperature must be positive")


def load_config(config_path: str | Path) -> ExperimentConfig:
    """Load YAML config, resolve the stage preset and validate."""
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = _dict_to_dataclass(ExperimentConfig, raw)
    config = dataclasses.replace(config, model=resolve_stages(config.model))
    validate_config(config)
    return config


def save_config(config: ExperimentConfig, save_path: str | Path) -> None:
    """Save config to YAML."""
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)
    raw = dataclasses.asdict(config)
    raw["data"]["mean"] = list(raw["data"]["mean"])
    raw["data"]["std"] = list(raw["data"]["std"])
    with open(save_path, "w") as f:
        yaml.safe_dump(raw, f, default_flow_style=False)

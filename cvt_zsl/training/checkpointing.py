"""
Checkpoint helpers: RNG state capture/restore and partial weight loading.

Training checkpoints themselves are assembled by ``CvTTrainer.save_checkpoint``.
"""

from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Any, Iterable

import numpy as np
import torch
import torch.nn as nn

logger = logging.getLogger(__name__)

__all__ = ["capture_rng_state", "restore_rng_state", "load_model_weights"]


def capture_rng_state() -> dict[str, Any]:
    """Snapshot of the torch, CUDA, numpy and Python generators."""
    return {
        "torch": torch.get_rng_state(),
        "torch_cuda": torch.cuda.get_rng_state_all() if torch.cuda.is_available() else None,
        "numpy": np.random.get_state(),
        "python": random.getstate(),
    }


def restore_rng_state(checkpoint: dict[str, Any]) -> None:
    """Restore the generators saved under ``checkpoint["rng_state"]``."""
    state = checkpoint.get("rng_state")
    if state is None:
        logger.warning("Checkpoint has no RNG state; resumed run will not be reproducible")
        return

    torch.set_rng_state(state["torch"])
    if state.get("torch_cuda") is not None and torch.cuda.is_available():
        torch.cuda.set_rng_state_all(state["torch_cuda"])
    np.random.set_state(state["numpy"])
    random.setstate(state["python"])
    logger.info("Restored RNG state from checkpoint")


def load_model_weights(
    model: nn.Module,
    checkpoint_path: str | Path,
    exclude: Iterable[str] = ("head",),
    map_location: str | torch.device = "cpu",
    strip_prefixes: Iterable[str] = ("module.",),
) -> list[str]:
    """
    Initialize ``model`` from a training checkpoint or a bare state dict.

    Parameters whose name starts with any prefix in ``exclude``, or whose
    shape differs from the model's, are skipped, so a backbone trained on one
    label set can initialize a model for another.

    Args:
        model: Target model
        checkpoint_path: Checkpoint file
        exclude: Parameter-name prefixes to skip
        map_location: torch.load map_location
        strip_prefixes: Prefixes removed from checkpoint names before matching

    Returns:
        Names of the skipped tensors
    """
    ckpt = torch.load(Path(checkpoint_path), map_location=map_location, weights_only=False)
    state_dict = ckpt.get("model_state_dict", ckpt)
    own_state = model.state_dict()
    exclude = tuple(exclude)
    strip_prefixes = tuple(strip_prefixes)

    loadable, skipped = {}, []
    for name, value in state_dict.items():
        for prefix in strip_prefixes:
            if name.startswith(prefix):
                name = name[len(prefix):]
        if exclude and name.startswith(exclude):
            skipped.append(name)
        elif name in own_state and own_state[name].shape != value.shape:
            logger.warning(f"Shape mismatch for {name}: {tuple(value.shape)} vs {tuple(own_state[name].shape)}")
            skipped.append(name)
        else:
            loadable[name] = value

    result = model.load_state_dict(loadable, strict=False)
    if result.unexpected_keys:
        logger.warning(f"Unexpected keys ignored: {result.unexpected_keys}")
    logger.info(f"Loaded {len(loadable)} tensors from {checkpoint_path}; skipped {len(skipped)}")
    return skipped

"""Training infrastructure."""

from cvt_zsl.training.checkpointing import capture_rng_state, load_model_weights, restore_rng_state
from cvt_zsl.training.trainer import CvTTrainer, build_param_groups, init_distributed, seed_everything

__all__ = [
    "CvTTrainer",
    "build_param_groups",
    "init_distributed",
    "seed_everything",
    "capture_rng_state",
    "load_model_weights",
    "restore_rng_state",
]

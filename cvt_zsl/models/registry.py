"""
Name -> factory registry for CvT variants.

Factories take a ``ModelConfig`` (or a dict of its fields) and return a
model. The ``cvt_13`` / ``cvt_21`` / ``cvt_w24`` presets register themselves
in ``cvt_zsl.models``; experiments can add their own:

    @register_model("cvt_tiny")
    def cvt_tiny(config):
        return ConvolutionalVisionTransformer(config)

    model = create_model("cvt_tiny", config)
"""

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

ModelFactory = Callable[[Any], Any]

_FACTORIES: Dict[str, ModelFactory] = {}


def register_model(name: str) -> Callable[[ModelFactory], ModelFactory]:
    """Decorator registering ``factory`` under ``name``; re-registering replaces it."""
    def decorator(factory: ModelFactory) -> ModelFactory:
        if name in _FACTORIES:
            logger.warning(f"Replacing registered model factory '{name}'")
        _FACTORIES[name] = factory
        return factory
    return decorator


def create_model(name: str, config: Any) -> Any:
    """Build the model registered as ``name``.

    Raises:
        ValueError: ``name`` is not registered
    """
    factory = _FACTORIES.get(name)
    if factory is None:
        raise ValueError(f"Unknown model: '{name}'. Registered: {sorted(_FACTORIES)}")
    return factory(config)


def list_models() -> List[str]:
    return sorted(_FACTORIES)


def is_model_registered(name: str) -> bool:
    return name in _FACTORIES

"""Convolutional Vision Transformers with zero-shot classification heads."""

__version__ = "0.1.0"

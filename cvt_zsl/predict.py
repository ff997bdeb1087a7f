"""Classify images with a pretrained CvT from the Hugging Face hub."""

from __future__ import annotations

import argparse
import logging

from cvt_zsl.config import LoggingConfig
from cvt_zsl.pretrained import HUB_MODELS, classify_images, load_pretrained_cvt
from cvt_zsl.runtime_log import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="CvT pretrained inference")
    parser.add_argument("images", nargs="+", help="Image files to classify")
    parser.add_argument(
        "--model-id", default="microsoft/cvt-13",
        help=f"Hub model id (e.g. {', '.join(HUB_MODELS[:3])})",
    )
    parser.add_argument("--top-k", type=int, default=5)
    parser.add_argument("--log-dir", default="./logs")
    args = parser.parse_args()

    if args.top_k < 1:
        parser.error("--top-k must be positive")

    setup_logging(LoggingConfig(log_level="WARNING", log_dir=args.log_dir))
    logging.getLogger(__name__).info(f"Classifying {len(args.images)} images with {args.model_id}")

    pretrained = load_pretrained_cvt(args.model_id)
    for path, predictions in zip(args.images, classify_images(pretrained, args.images, top_k=args.top_k)):
        print(path)
        for label, prob in predictions:
            print(f"  {prob:.4f}  {label}")


if __name__ == "__main__":
    main()

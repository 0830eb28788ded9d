#!/usr/bin/env python3
"""Download the YOLOv8 weights used by the detection backend."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

import requests

from capture_detect.app.settings import load_settings

LOGGER = logging.getLogger(__name__)

MODEL_URLS = {
    "n": "https://github.com/ultralytics/assets/releases/download/v0.0.0/yolov8n.pt",
    "s": "https://github.com/ultralytics/assets/releases/download/v0.0.0/yolov8s.pt",
    "m": "https://github.com/ultralytics/assets/releases/download/v0.0.0/yolov8m.pt",
    "l": "https://github.com/ultralytics/assets/releases/download/v0.0.0/yolov8l.pt",
    "x": "https://github.com/ultralytics/assets/releases/download/v0.0.0/yolov8x.pt",
}


def download_weights(url: str, target: Path, session: Optional[requests.Session] = None) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    client = session or requests.Session()
    response = client.get(url, timeout=60)
    response.raise_for_status()
    temp_path = target.with_suffix(target.suffix + ".part")
    temp_path.write_bytes(response.content)
    temp_path.replace(target)
    LOGGER.info("Model weights downloaded to %s", target)
    return target


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Download YOLOv8 weights")
    parser.add_argument("--variant", choices=MODEL_URLS.keys(), default="n", help="YOLOv8 variant to download")
    parser.add_argument("--url", type=str, default=None, help="Model weights URL override")
    parser.add_argument("--output", type=Path, default=None, help="Destination path (defaults to DETECT_MODEL_PATH)")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO)
    args = parse_args(argv)
    url = args.url or MODEL_URLS[args.variant]
    target = args.output or load_settings().model_path
    download_weights(url, target)


if __name__ == "__main__":
    main()

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from .config import load_config
from .steps import STAGES, create_run_paths, run_stages


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run geostatistics engine stages.")
    parser.add_argument("--config", required=True, help="Path to config YAML.")
    parser.add_argument(
        "--stage",
        default="all",
        choices=["all", *STAGES],
        help="Pipeline stage to run.",
    )
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def _setup_logging(log_path: Path, level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.FileHandler(log_path, encoding="utf-8"), logging.StreamHandler()],
    )
    logging.info("Log path: %s", log_path)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    config = load_config(args.config)
    run_paths = create_run_paths(config)
    _setup_logging(run_paths.log_path("run.log"), args.log_level)
    run_stages(config, run_paths, stage=args.stage)
    logging.info("Run finished: %s", run_paths.base)


if __name__ == "__main__":
    main()

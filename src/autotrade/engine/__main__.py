"""Allow running the engine as: python -m autotrade.engine [--config path]."""

import argparse

from autotrade.engine.runner import main

parser = argparse.ArgumentParser(description="Automated trading engine")
parser.add_argument("--config", default=None, help="Path to config.yaml")
args = parser.parse_args()
main(config_path=args.config)

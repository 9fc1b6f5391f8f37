#!/usr/bin/env python3
"""CLI entrypoint for the reference -> spatial integration pipeline."""

from __future__ import annotations

import argparse

from anchormap.pipeline.integration import run_pipeline


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Transfer reference clusters onto a Merscope dataset via anchors."
    )
    parser.add_argument(
        "--config", required=True, help="Path to JSON config for the integration pipeline."
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    run_pipeline(str(args.config))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

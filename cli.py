#!/usr/bin/env python3
"""
INFOLOOP v1.0 CLI - Command Line Interface
Run the information loop, inspect its configuration, validate config files.

Usage:
    python cli.py --test                  # Run receipt emission test
    python cli.py --status                # Show effective config + registry
    python cli.py --run 5                 # Run the loop for 5 seconds
    python cli.py --run 5 --seed 42       # Reproducible symbol stream
    python cli.py --run 5 --config PATH   # Run with a config file
    python cli.py --validate PATH         # Validate a config file
"""

import argparse
import asyncio
import json
import sys

from config import DEFAULTS, load_pipeline_config, merge_config, _get_config_path
from core import RECEIPT_TYPES, StopRule, _get_receipts_path, emit_receipt, now_iso
from infoloop import FEEDBACK_EDGE, STAGE_ORDER, Pipeline
from symbols import ALPHABET, GREEK_MAP, validate_channel_table


def cmd_test() -> dict:
    """Emit one test receipt and print it."""
    receipt = emit_receipt(
        "cli_test",
        {"test": True, "cli_version": "1.0"},
    )
    print(json.dumps(receipt, indent=2))
    return receipt


def _effective_config(config_path: str | None) -> dict:
    if config_path:
        return load_pipeline_config(config_path)
    if _get_config_path().exists():
        return load_pipeline_config()
    return merge_config(DEFAULTS, {})


def cmd_status(config_path: str | None = None) -> dict:
    """Show the effective configuration and the symbol registry summary."""
    status = {
        "receipts_path": str(_get_receipts_path()),
        "config_path": config_path or str(_get_config_path()),
        "config": _effective_config(config_path),
        "registry": {
            "alphabet_size": len(ALPHABET),
            "greek_glyphs": len(set(GREEK_MAP.values())),
            **validate_channel_table(),
        },
        "stage_order": STAGE_ORDER,
        "feedback_edge": list(FEEDBACK_EDGE),
        "receipt_types": RECEIPT_TYPES,
        "ts": now_iso(),
    }
    print(json.dumps(status, indent=2, ensure_ascii=False))
    return status


def cmd_run(seconds: float, config_path: str | None = None, seed: int | None = None) -> dict:
    """Run every stage for `seconds`, then print the snapshot."""
    if seconds <= 0:
        raise StopRule("invalid_duration", f"--run needs seconds > 0, got {seconds}")

    config = _effective_config(config_path)
    if seed is not None:
        config = merge_config(config, {"seed": seed})

    pipeline = Pipeline(config)
    snapshot = asyncio.run(pipeline.run_for(seconds))
    print(json.dumps(snapshot, indent=2, default=str, ensure_ascii=False))
    return snapshot


def cmd_validate(path: str) -> dict:
    """Validate a config file and report the outcome."""
    config = load_pipeline_config(path)
    result = {"path": path, "valid": True, "aggregation_threshold": config["aggregation_threshold"]}
    print(json.dumps(result, indent=2))
    return result


def main():
    parser = argparse.ArgumentParser(
        description="INFOLOOP v1.0 CLI - Multi-stage symbol transformation loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python cli.py --test                  # Receipt emission test
    python cli.py --status                # Effective config + registry
    python cli.py --run 3 --seed 7        # Run 3 seconds, print snapshot
    python cli.py --validate data/pipeline_config.json
        """,
    )

    parser.add_argument("--test", action="store_true", help="Run receipt emission test")
    parser.add_argument("--status", action="store_true", help="Show effective config")
    parser.add_argument(
        "--run", type=float, metavar="SECONDS", help="Run the loop for SECONDS"
    )
    parser.add_argument("--config", metavar="PATH", help="Pipeline config JSON")
    parser.add_argument("--seed", type=int, metavar="N", help="Random seed for --run")
    parser.add_argument("--validate", metavar="PATH", help="Validate a config file")
    parser.add_argument("--version", action="version", version="INFOLOOP CLI v1.0")

    args = parser.parse_args()

    try:
        if args.test:
            cmd_test()
        elif args.status:
            cmd_status(args.config)
        elif args.run is not None:
            cmd_run(args.run, args.config, args.seed)
        elif args.validate:
            cmd_validate(args.validate)
        else:
            parser.print_help()
            sys.exit(1)
    except StopRule as e:
        print(f"STOPRULE VIOLATION: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

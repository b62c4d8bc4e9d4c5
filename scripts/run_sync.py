#!/usr/bin/env python3
"""Run an answer clustering sync for one or more locale exports."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List

from pydantic import ValidationError

from answerlink.clustering import RunMode
from answerlink.config import ConfigError, load_config
from answerlink.contracts import SurveyExport
from answerlink.orchestration import ResetTarget, SyncService

LOGGER = logging.getLogger("answerlink.scripts.run_sync")


def parse_args() -> argparse.Namespace:
    """Parse command line arguments for the sync runner.

    Returns:
        argparse.Namespace: Parsed command line arguments.
    """
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("exports", nargs="+", type=Path, help="JSON export files, one locale each")
    parser.add_argument("--config", type=Path, default=None, help="Override path to config.yaml")
    parser.add_argument("--incremental", action="store_true", help="Reuse the prior cluster map (needs a full resync)")
    parser.add_argument("--dry-run", action="store_true", help="Compute and write audit artifacts, commit nothing")
    parser.add_argument(
        "--reset",
        action="append",
        choices=[target.value for target in ResetTarget],
        default=[],
        help="Clear this state for every export's locale before syncing (repeatable)",
    )
    parser.add_argument("--workers", type=int, default=4, help="Locales processed in parallel (default: 4)")
    return parser.parse_args()


def _read_exports(paths: List[Path]) -> List[SurveyExport]:
    exports: List[SurveyExport] = []
    for path in paths:
        with path.open("r", encoding="utf-8") as handle:
            exports.append(SurveyExport.model_validate(json.load(handle)))
    return exports


def main() -> int:
    """Entry point for the sync CLI.

    Returns:
        int: Exit status code where ``0`` indicates every locale synced.
    """
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(name)s: %(message)s")
    args = parse_args()

    try:
        config = load_config(args.config)
        exports = _read_exports(args.exports)
    except (ConfigError, OSError, ValueError, ValidationError) as exc:
        print(f"Unable to start sync: {exc}", file=sys.stderr)
        return 2

    service = SyncService.from_config(config, max_workers=args.workers)
    if args.reset:
        if args.dry_run:
            print("--reset cannot be combined with --dry-run", file=sys.stderr)
            return 2
        for export in exports:
            removed = service.targeted_reset(export.locale, args.reset)
            print(f"Reset {export.locale.key}: {removed}")

    mode = RunMode.INCREMENTAL if args.incremental else RunMode.FULL
    batch = service.sync_many(exports, mode=mode, dry_run=args.dry_run)
    for key, result in sorted(batch.locales.items()):
        if result.outcome is None:
            print(f"{key}: failed")
            continue
        summary = result.outcome.report.summary()
        print(
            f"{key}: mode={result.mode.value}",
            f"committed={result.committed}",
            f"generation={result.generation or '-'}",
            f"clusters={summary['clusters']}",
            f"orphans={summary['orphans']}",
            f"overlaps={summary['overlaps']}",
        )
    for error in batch.errors:
        print(error, file=sys.stderr)
    return 0 if not batch.errors else 1


if __name__ == "__main__":
    raise SystemExit(main())

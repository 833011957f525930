#!/usr/bin/env python3
"""
Index Reconciliation Utility
Re-indexes module records missing from the central memory index and removes
index entries whose record no longer exists.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from federated_memory.core import runtime
from federated_memory.core.errors import ConfigurationError
from federated_memory.core.maintenance import clear_embedding_cache, purge_expired_cache, reconcile_index


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile the central memory index with module storage")
    parser.add_argument("--owner", action="append", dest="owners", metavar="OWNER_ID",
                        help="Only reconcile this owner (repeatable)")
    parser.add_argument("--no-prune", action="store_true",
                        help="Report dangling index entries instead of removing them")
    parser.add_argument("--clear-cache", action="store_true",
                        help="Drop cached embeddings before reconciling")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    return parser


async def run(args) -> int:
    try:
        core = await runtime.init()
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return 1

    try:
        progress = print if not args.json else (lambda *_: None)
        progress(f"Reconciling modules: {', '.join(core.registry.list_ids())}")

        if args.clear_cache:
            cache_report = await clear_embedding_cache(core.embeddings)
            progress(f"✓ Cleared {cache_report.metadata['removed']} cached embeddings")
            purged = await purge_expired_cache(core.cache_backend)
            if purged:
                progress(f"✓ Purged {purged} expired cache rows")

        report = await reconcile_index(core, owner_ids=args.owners, prune=not args.no_prune)
    finally:
        await runtime.shutdown()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        for action in report.actions_taken:
            print(f"✓ {action}")
        for recommendation in report.recommendations:
            print(f"! {recommendation}")
        for error in report.errors:
            print(f"✗ {error}")
        print(f"Issues found: {report.issues_found}, resolved: {report.issues_resolved}")

    return 1 if report.errors else 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())

# src/main.py — v2
"""CLI entry point — run and show commands.

Usage:
    dealintake run <directory> [options]
    dealintake show <store_root> [--scope ID]

``run`` replays captured extractor responses from ``<file>.fields.json``
sidecars, so a directory of documents plus sidecars reproduces a session
end to end without a live extraction provider.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from dealintake.version import __version__

if TYPE_CHECKING:
    from dealintake.core.models import DocumentInput
    from dealintake.extraction.replay_extractor import ReplayExtractor

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    _setup_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="dealintake",
        description=f"dealintake v{__version__} — facility document extraction & reconciliation",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- run ---
    p_run = subparsers.add_parser(
        "run", help="Run a session over a directory of documents",
    )
    p_run.add_argument("directory", type=Path, help="Directory of documents")
    p_run.add_argument("--deal-id", default=None, help="Deal id (profile scope)")
    p_run.add_argument(
        "--store", choices=["memory", "json"], default=None,
        help="Store backend (default: STORE_BACKEND setting)",
    )
    p_run.add_argument(
        "--store-root", type=Path, default=None,
        help="JSON store root (default: STORE_ROOT setting)",
    )
    p_run.add_argument(
        "-w", "--max-workers", type=int, default=None,
        help="Extraction worker pool size",
    )
    p_run.add_argument(
        "--no-recursive", action="store_true",
        help="Disable recursive scanning",
    )
    p_run.set_defaults(func=_cmd_run)

    # --- show ---
    p_show = subparsers.add_parser(
        "show", help="Print stored profiles, conflicts and clarifications",
    )
    p_show.add_argument("store_root", type=Path, help="JSON store root")
    p_show.add_argument("--scope", default=None, help="Only this deal/session scope")
    p_show.set_defaults(func=_cmd_show)

    return parser


async def _cmd_run(args: argparse.Namespace) -> int:
    """Run one session and print its snapshot as JSON."""
    from dealintake.api.facade import run_batch
    from dealintake.config.settings import load_settings
    from dealintake.extraction.replay_extractor import ReplayExtractor

    directory: Path = args.directory
    if not directory.is_dir():
        logger.error("Not a directory: %s", directory)
        return 1

    overrides: dict[str, object] = {}
    if args.store:
        overrides["store_backend"] = args.store
    if args.store_root:
        overrides["store_root"] = args.store_root
    if args.max_workers:
        overrides["max_workers"] = args.max_workers
    settings = load_settings(**overrides)

    extractor = ReplayExtractor()
    documents = _collect_documents(directory, extractor, recursive=not args.no_recursive)
    if not documents:
        logger.error("No supported documents in %s", directory)
        return 1

    logger.info("Running session over %d documents from %s", len(documents), directory)
    snapshot = await run_batch(documents, extractor, settings=settings, deal_id=args.deal_id)
    print(snapshot.model_dump_json(indent=2))
    return 0 if snapshot.session.status == "complete" else 2


async def _cmd_show(args: argparse.Namespace) -> int:
    """Print the content of a JSON store."""
    from dealintake.storage.json_store import JsonStore

    store_root: Path = args.store_root
    if not store_root.is_dir():
        logger.error("Not a directory: %s", store_root)
        return 1

    store = JsonStore(store_root)
    scopes = [args.scope] if args.scope else await store.list_scopes()
    profiles = []
    for scope in scopes:
        profiles.extend(await store.load_profiles(scope))
    facility_ids = {p.id for p in profiles}
    conflicts = [c for c in await store.list_conflicts() if c.facility_id in facility_ids]
    clarifications = [c for c in await store.list_clarifications() if c.facility_id in facility_ids]

    payload = {
        "scopes": scopes,
        "profiles": [p.model_dump(mode="json") for p in profiles],
        "conflicts": [c.model_dump(mode="json") for c in conflicts],
        "clarifications": [c.model_dump(mode="json") for c in clarifications],
    }
    print(json.dumps(payload, indent=2))
    return 0


def _collect_documents(
    directory: Path, extractor: ReplayExtractor, recursive: bool = True
) -> list[DocumentInput]:
    """Load supported documents and register their sidecars with ``extractor``."""
    from dealintake.core.models import DocumentInput
    from dealintake.extraction.replay_extractor import SIDECAR_SUFFIX
    from dealintake.ingestion.text_ingestor import TextIngestor

    supported = set(TextIngestor().supported_extensions)
    pattern = "**/*" if recursive else "*"
    documents: list[DocumentInput] = []
    for path in sorted(directory.glob(pattern)):
        if not path.is_file() or path.name.endswith(SIDECAR_SUFFIX):
            continue
        if path.suffix.lower() not in supported:
            logger.debug("Skipping unsupported file %s", path.name)
            continue
        if not extractor.register_sidecar(path):
            logger.warning("No %s sidecar for %s", SIDECAR_SUFFIX, path.name)
        documents.append(DocumentInput(
            filename=path.name,
            content=path.read_bytes(),
            document_id=str(path.relative_to(directory)),
        ))
    return documents


def _setup_logging(verbose: bool) -> None:
    """Configure logging for CLI usage."""
    from dealintake.logging.logger import setup_logging

    setup_logging(level="DEBUG" if verbose else "INFO", log_format="text")


if __name__ == "__main__":
    sys.exit(main())

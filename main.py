"""Command-line interface for the manuscript annotation synchronization engine."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from annosync.anno_mapping import Rect, to_backend
from annosync.cache_store import LocalCacheStore
from annosync.client import AnnotationClient, iiif_base_url
from annosync.config import SyncConfig
from annosync.errors import AnnotationSyncError
from annosync.identity import is_server_backed
from annosync.kv_store import JsonFileStore
from annosync.overlay_layer import Annotation
from annosync.viewer import ViewerSession


def setup_logging(verbose: bool = False) -> None:
    """Configure the root logger."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        force=True,
    )

    # urllib3 logs every connection at DEBUG; keep it quiet by default.
    if not verbose:
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def load_config(args: argparse.Namespace) -> SyncConfig:
    config = SyncConfig.from_env()
    if args.api_url:
        config.api_url = args.api_url
    if args.state:
        config.state_path = args.state
    return config


def open_session(args: argparse.Namespace, config: SyncConfig) -> ViewerSession:
    client = AnnotationClient(config.api_url, timeout=config.request_timeout)
    session = ViewerSession(
        args.image_id,
        args.iiif_image,
        client,
        JsonFileStore(config.state_path),
        config=config,
    )
    if not session.open():
        raise AnnotationSyncError("Viewer closed before the image metadata arrived")
    classification = getattr(args, "classification", None)
    if classification is not None:
        session.set_classification(classification)
    hand = getattr(args, "hand", None)
    if hand is not None:
        session.set_hand(hand)
    return session


def describe(annotation: Annotation, image_height: int) -> dict:
    rect = to_backend(annotation.selector, image_height)
    return {
        "id": annotation.id,
        "saved": is_server_backed(annotation.id),
        "rect": [rect.x, rect.y, rect.width, rect.height],
        "meta": annotation.meta,
    }


def print_working_set(session: ViewerSession) -> None:
    height = session.state.image_height or 0
    payload = {
        "image": session.state.image_id,
        "imageHeight": height,
        "unsaved": session.unsaved,
        "annotations": [describe(annotation, height) for annotation in session.working_set],
    }
    json.dump(payload, sys.stdout, indent=2)
    sys.stdout.write("\n")


def handle_pull(args: argparse.Namespace) -> None:
    config = load_config(args)
    session = open_session(args, config)
    session.persist_working_set()
    print_working_set(session)
    session.close()


def handle_draw(args: argparse.Namespace) -> None:
    config = load_config(args)
    session = open_session(args, config)
    session.enable_draw()
    annotation = session.draw(Rect(args.x, args.y, args.width, args.height))
    logging.info("Drew %s; %d unsaved change(s)", annotation.id, session.unsaved)
    session.close()


def handle_delete(args: argparse.Namespace) -> None:
    config = load_config(args)
    session = open_session(args, config)
    if session.delete(args.annotation_id):
        logging.info("Deleted %s; %d unsaved change(s)", args.annotation_id, session.unsaved)
    else:
        logging.warning("Annotation %s not found on image %s", args.annotation_id, args.image_id)
    session.close()


def handle_save(args: argparse.Namespace) -> None:
    config = load_config(args)
    session = open_session(args, config)
    if session.unsaved == 0 and not args.force:
        logging.info("No unsaved changes for %s", args.image_id)
        session.close()
        return
    result = session.save()
    session.close()
    if result.failed:
        for failure in result.failed:
            logging.error("Failed to save %s: %s", failure.annotation_id, failure.reason)
        sys.exit(1)
    logging.info(
        "Saved %d new and %d existing annotation(s)",
        len(result.created),
        len(result.updated),
    )


def handle_status(args: argparse.Namespace) -> None:
    config = load_config(args)
    store = JsonFileStore(config.state_path)
    session = ViewerSession(args.image_id, args.iiif_image, AnnotationClient(config.api_url), store, config=config)
    entry = session.cache.read(session.state.iiif_image)
    payload = {
        "image": args.image_id,
        "unsaved": session.unsaved,
        "annotationsVisible": session.state.annotations_visible,
        "cache": None
        if entry is None
        else {"imageHeight": entry.image_height, "annotations": len(entry.annotations)},
    }
    json.dump(payload, sys.stdout, indent=2)
    sys.stdout.write("\n")


def handle_clear_cache(args: argparse.Namespace) -> None:
    config = load_config(args)
    LocalCacheStore(JsonFileStore(config.state_path)).clear(iiif_base_url(args.iiif_image))
    logging.info("Cleared annotation cache for %s", args.iiif_image)


def add_image_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("image_id", help="Manuscript image identifier on the backend.")
    parser.add_argument("iiif_image", help="IIIF image URL (with or without /info.json).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument(
        "--api-url",
        help="Backend base URL (default: $ANNOSYNC_API_URL or http://localhost:8000).",
    )
    parser.add_argument(
        "--state",
        type=Path,
        help="JSON file holding the local cache (default: $ANNOSYNC_STATE or .annosync/state.json).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    pull_parser = subparsers.add_parser(
        "pull",
        help="Load server annotations, merge unsaved local work and print the result.",
    )
    add_image_arguments(pull_parser)
    pull_parser.add_argument("--classification", type=int, help="Only load this classification.")
    pull_parser.set_defaults(func=handle_pull)

    draw_parser = subparsers.add_parser(
        "draw",
        help="Add a rectangle (top-left origin pixels) as a new unsaved annotation.",
    )
    add_image_arguments(draw_parser)
    for name in ("x", "y", "width", "height"):
        draw_parser.add_argument(name, type=int)
    draw_parser.set_defaults(func=handle_draw)

    delete_parser = subparsers.add_parser(
        "delete",
        help="Remove an annotation from the working set with the delete tool.",
    )
    add_image_arguments(delete_parser)
    delete_parser.add_argument("annotation_id")
    delete_parser.set_defaults(func=handle_delete)

    save_parser = subparsers.add_parser(
        "save",
        help="Create new and update existing annotations on the backend.",
    )
    add_image_arguments(save_parser)
    save_parser.add_argument("--classification", type=int, help="Classification id for new annotations.")
    save_parser.add_argument("--hand", type=int, help="Hand id for new annotations.")
    save_parser.add_argument(
        "--force",
        action="store_true",
        help="Save even when the unsaved counter is zero.",
    )
    save_parser.set_defaults(func=handle_save)

    status_parser = subparsers.add_parser(
        "status",
        help="Show the unsaved counter, visibility flag and cache summary.",
    )
    add_image_arguments(status_parser)
    status_parser.set_defaults(func=handle_status)

    clear_parser = subparsers.add_parser(
        "clear-cache",
        help="Drop the cached annotations for an IIIF image.",
    )
    clear_parser.add_argument("iiif_image")
    clear_parser.set_defaults(func=handle_clear_cache)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    try:
        args.func(args)
    except AnnotationSyncError as exc:
        logging.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()

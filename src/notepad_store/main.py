#!/usr/bin/env python
"""Command line entry point for the NotePad store."""
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from notepad_store import __version__
from notepad_store.config import config
from notepad_store.exceptions import NotePadError, StoreOpenError
from notepad_store.models.schema import Note, TagColor
from notepad_store.observability import configure_logging
from notepad_store.services.notepad_service import NotePadService
from notepad_store.services.task_coordinator import TaskCoordinator
from notepad_store.storage.store import Store


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="notepad-store", description="NotePad note and tag store"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEPAD_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEPAD_LOG_LEVEL", "WARNING")
    )
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Create a note")
    add.add_argument("title")
    add.add_argument("--content", default="")
    add.add_argument("--tag", dest="tags", action="append", default=[], help="Tag id (repeatable)")

    lst = sub.add_parser("list", help="List notes, newest first")
    lst.add_argument("--limit", type=int, default=None)

    sub.add_parser("tags", help="List tags with note counts")

    tag_add = sub.add_parser("tag-add", help="Create a tag")
    tag_add.add_argument("name")
    tag_add.add_argument("--color", choices=[c.value for c in TagColor], default=None)

    imp = sub.add_parser("import", help="Generate sample notes")
    imp.add_argument("count", type=int)

    search = sub.add_parser("search", help="Search notes by text and tag")
    search.add_argument("query", nargs="?", default="")
    search.add_argument("--tag", default=None, help="Tag id to filter by")

    purge = sub.add_parser("purge", help="Delete notes older than N days")
    purge.add_argument("days", type=int)

    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    config.log_level = args.log_level


def format_note(note: Note) -> str:
    tags = ", ".join(t.name for t in note.tags)
    line = f"{note.id}  {note.creation_date:%Y-%m-%d %H:%M}  {note.title or '(untitled)'}"
    return f"{line}  [{tags}]" if tags else line


def run_command(args, store: Store) -> None:
    """Dispatch one subcommand against an open store."""
    service = NotePadService(store)
    if args.command == "add":
        note = service.create_note(args.title, content=args.content, tag_ids=args.tags)
        print(note.id)
    elif args.command == "list":
        for note in service.list_notes(limit=args.limit):
            print(format_note(note))
    elif args.command == "tags":
        for tag in service.list_tags():
            print(f"{tag.id}  {tag.color.value:<7} {tag.name}  ({tag.note_count})")
    elif args.command == "tag-add":
        tag = service.create_tag(args.name, args.color)
        print(tag.id)
    else:
        with TaskCoordinator(store) as coordinator:
            if args.command == "import":
                coordinator.wait(coordinator.import_sample_notes(args.count))
                print(f"Imported {args.count} notes")
            elif args.command == "search":
                notes = coordinator.wait(coordinator.search_notes(args.query, args.tag))
                for note in notes:
                    print(format_note(note))
            elif args.command == "purge":
                deleted = coordinator.wait(coordinator.delete_old_notes(args.days))
                print(f"Deleted {deleted} notes")


def main(argv: Optional[List[str]] = None):
    """Run one notepad-store command."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        configure_logging(
            log_dir=config.log_dir,
            level=log_level,
            console=True,
            file_logging=config.file_logging,
        )
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    logger = logging.getLogger(__name__)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        store = Store()
    except (StoreOpenError, OSError) as e:
        logger.error(f"Failed to open store: {e}")
        print(f"Error: failed to open store: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        run_command(args, store)
    except NotePadError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()

# main.py
"""CLI entry point for the Folio book generation system."""

from __future__ import annotations

import argparse

from config import settings

from orchestration.cli_runner import RunOptions, run


def main() -> None:
    """Parse command-line arguments and start Folio."""
    parser = argparse.ArgumentParser(description="Generate a book from a premise.")
    parser.add_argument("--premise", default=None, help="Story premise for a new book")
    parser.add_argument(
        "--chapters",
        type=int,
        default=settings.MIN_CHAPTERS,
        help=f"Number of chapters (minimum {settings.MIN_CHAPTERS})",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve the outline without stopping for review",
    )
    parser.add_argument(
        "--resume", action="store_true", help="Continue the stored session"
    )
    parser.add_argument(
        "--reset", action="store_true", help="Discard the stored session first"
    )
    parser.add_argument(
        "--approve", action="store_true", help="Approve the pending outline"
    )
    parser.add_argument(
        "--regenerate-outline",
        action="store_true",
        help="Replace the pending outline with a new one",
    )
    args = parser.parse_args()
    if args.chapters < settings.MIN_CHAPTERS:
        parser.error(f"--chapters must be at least {settings.MIN_CHAPTERS}")
    run(
        RunOptions(
            premise=args.premise,
            chapters=args.chapters,
            auto_approve=args.auto_approve,
            resume=args.resume,
            reset=args.reset,
            approve=args.approve,
            regenerate_outline=args.regenerate_outline,
        )
    )


if __name__ == "__main__":
    main()

"""Command-line interface for md2pages."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from .version import __version__


def _get_usage() -> str:
    return (
        f"md2pages {__version__}\n"
        "Usage:\n"
        "  md2pages [--help] [--version|--ver]\n"
        "  md2pages --from-dir FROM_DIR --to-dir TO_DIR [options]\n\n"
        "Options:\n"
        "  --exclude NAME               Skip files/directories with this name (repeatable)\n"
        "  --toc-title TEXT             Title shown above the table of contents\n"
        "  --css-href URL               Stylesheet linked from every page\n"
        "  --lang CODE                  Value of the <html lang> attribute\n"
        "  --disable-toc                Do not prepend a table of contents to pages\n"
        "  --strict-anchors             Exit with code 10 when a TOC link has no target heading\n"
        "  --verbose                    Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--from-dir", help="Source directory containing Markdown documents and assets")
    parser.add_argument("--to-dir", help="Output directory (cleared before each build)")
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        help="File or directory name to skip, in addition to the defaults (repeatable)",
    )
    parser.add_argument("--toc-title", default=None, help="Title shown above the table of contents")
    parser.add_argument(
        "--css-href",
        default=None,
        help="Stylesheet linked from every page (fallback: MD2PAGES_CSS_HREF env var)",
    )
    parser.add_argument("--lang", default=None, help="Value of the <html lang> attribute")
    parser.add_argument("--disable-toc", action="store_true", help="Do not prepend a table of contents to pages")
    parser.add_argument(
        "--strict-anchors",
        action="store_true",
        help="Return exit code 10 when a TOC entry links to an anchor missing from the page",
    )
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    if not args.from_dir or not args.to_dir:
        print(_get_usage())
        print("Options --from-dir and --to-dir are required unless --help or --version/--ver is used", file=sys.stderr)
        return 6

    from_dir = Path(args.from_dir).expanduser().resolve()
    to_dir = Path(args.to_dir).expanduser().resolve()

    if not from_dir.exists() or not from_dir.is_dir():
        print(f"Source directory not found: {from_dir}", file=sys.stderr)
        return 6

    if to_dir.exists() and not to_dir.is_dir():
        print(f"Output path is not a directory: {to_dir}", file=sys.stderr)
        return 7

    try:
        from md2pages import core
    except Exception as exc:
        print(f"Unable to import md2pages core: {exc}", file=sys.stderr)
        return 6

    if core.paths_overlap(to_dir, from_dir):
        print(f"Output directory must not be or contain the source directory: {to_dir}", file=sys.stderr)
        return 7

    core.setup_logging(args.verbose, args.debug)

    css_href = args.css_href or os.environ.get(core.CSS_HREF_ENV) or core.DEFAULT_CSS_HREF

    config = core.BuildConfig(
        from_dir=from_dir,
        to_dir=to_dir,
        exclude=set(core.DEFAULT_EXCLUDES) | {name for name in args.exclude if name},
        toc_title=str(args.toc_title if args.toc_title is not None else core.DEFAULT_TOC_TITLE),
        css_href=str(css_href),
        lang=str(args.lang or core.DEFAULT_LANG),
        disable_toc=bool(args.disable_toc),
        strict_anchors=bool(args.strict_anchors),
        verbose=bool(args.verbose),
        debug=bool(args.debug),
    )

    try:
        result = core.run_build_pipeline(config)
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 6

    if config.strict_anchors and result.anchor_failures:
        return 10
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

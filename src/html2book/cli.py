"""Command-line interface for html2book."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .version import __version__


def _get_usage() -> str:
    return (
        f"html2book {__version__}\n"
        "Usage:\n"
        "  html2book [--help] [--version|--ver]\n"
        "  html2book INPUT_DIR [options]\n\n"
        "Options:\n"
        "  -s, --suffix SUFFIX          Output directory suffix (default: _converted)\n"
        "  --rename-prefix PREFIX       Prefix added to the original HTML file names (default: _)\n"
        "  -b, --mdbook                 Only generate book.toml and SUMMARY.md\n"
        "  --fold-file-names            Lowercase document file names as well as directories\n"
        "  --verbose                    Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("input_dir", nargs="?", help="Directory tree of HTML documents to convert")
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("-s", "--suffix", default="_converted", help="Output directory suffix")
    parser.add_argument(
        "--rename-prefix",
        default="_",
        help="Prefix added to the original HTML file names once converted",
    )
    parser.add_argument(
        "-b",
        "--mdbook",
        action="store_true",
        help="Generate only book.toml and SUMMARY.md, without converting documents",
    )
    parser.add_argument(
        "--fold-file-names",
        action="store_true",
        help="Lowercase document file names too (directories are always lowercased)",
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

    from html2book import core

    if not args.input_dir:
        print(_get_usage())
        print("INPUT_DIR is required", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    input_dir = Path(args.input_dir).expanduser().resolve()
    if not input_dir.exists() or not input_dir.is_dir():
        print(f"Input directory not found: {input_dir}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if not args.suffix:
        print("Invalid value for --suffix: must not be empty", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    config = core.ConversionConfig(
        input_dir=input_dir,
        suffix=str(args.suffix),
        rename_prefix=str(args.rename_prefix),
        mdbook_only=bool(args.mdbook),
        fold_file_names=bool(args.fold_file_names),
        verbose=bool(args.verbose),
        debug=bool(args.debug),
    )
    core.setup_logging(config)
    out_dir = config.output_dir

    try:
        core.prepare_output_tree(input_dir, out_dir)
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return core.EXIT_OUTPUT_DIR

    if not config.mdbook_only:
        try:
            core.run_conversion_pipeline(out_dir, config)
        except RuntimeError as exc:
            print(f"Conversion failed: {exc}", file=sys.stderr)
            return core.EXIT_CONVERSION

    try:
        core.generate_book_files(out_dir, config)
    except RuntimeError as exc:
        print(f"Book files generation failed: {exc}", file=sys.stderr)
        return core.EXIT_BOOK_FILES

    if config.mdbook_only:
        print(f"mdbook files generated: {out_dir}")
    else:
        print(f"Conversion completed: {input_dir} -> {out_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import os
import re
import sys
from importlib import metadata
from pathlib import Path

import tomllib
from rich.console import Console
from rich.markup import escape

from .build import (
    DEFAULT_LIST_NAME,
    DEFAULT_NEW_FILE_NAME,
    BookmarkletBuilder,
    BuildError,
    BuildOptions,
    BuildResult,
)
from .hashing import DEFAULT_SALT, DEFAULT_STRETCHING
from .logging_utils import configure_logging, set_debug_logging
from .ports import PortUnavailableError
from .server import DEFAULT_HOST, DEFAULT_PORT, DeliveryServer, DeliveryServerError, ServerConfig

SALT_ENV_VAR = "BMK_HASH_SALT"
PREFIX = escape("[bmk]")


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover - defensive
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("bmk")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"bmk {__version__}",
    )


def _add_build_flags(ap: argparse.ArgumentParser) -> None:
    ap.add_argument(
        "--include",
        default=r"\.js$",
        help=r"Regular expression for file names to include (default: \.js$).",
    )
    ap.add_argument(
        "--no-url-encode",
        dest="url_encode",
        action="store_false",
        help="Emit the script after javascript: without percent-encoding it.",
    )
    ap.add_argument(
        "--no-ensure-undefined",
        dest="ensure_undefined",
        action="store_false",
        help="Do not append ';void 0;' to the scripts.",
    )
    ap.add_argument(
        "--new-file",
        action="store_true",
        help="Write bookmarklets as new files instead of rewriting the entries.",
    )
    ap.add_argument(
        "--new-file-name",
        default=DEFAULT_NEW_FILE_NAME,
        help=f"Name of new files; [path], [name] and [ext] are replaced (default: {DEFAULT_NEW_FILE_NAME}).",
    )
    ap.add_argument(
        "--list",
        dest="bookmarklets_list",
        action="store_true",
        help="Also write an HTML page listing the bookmarklets.",
    )
    ap.add_argument(
        "--list-name",
        default=DEFAULT_LIST_NAME,
        help=f"File name of the bookmarklets list (default: {DEFAULT_LIST_NAME}).",
    )
    ap.add_argument(
        "--remove-entry-file",
        action="store_true",
        help="Do not keep the entry scripts in the output (use with --list or --new-file).",
    )
    ap.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug logging.",
    )


def _add_server_flags(ap: argparse.ArgumentParser) -> None:
    ap.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"Host interface for the delivery server (default: {DEFAULT_HOST}).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port for the delivery server (default: {DEFAULT_PORT}).",
    )
    ap.add_argument(
        "--fallback-port",
        action="store_true",
        help="Try the following ports when the port is already in use.",
    )
    ap.add_argument(
        "--salt",
        help=f"Salt for the filename hash (default: ${SALT_ENV_VAR} or a static salt).",
    )
    ap.add_argument(
        "--stretching",
        type=int,
        default=DEFAULT_STRETCHING,
        help=f"Number of hash rounds protecting file names (default: {DEFAULT_STRETCHING}).",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="bmk",
        description=(
            "Build bookmarklets from scripts. Use `bmk watch` to rebuild on change and "
            "serve the latest build to registered bookmarklets."
        ),
    )
    _add_version_flag(ap)
    subparsers = ap.add_subparsers(dest="command")

    build = subparsers.add_parser("build", help="Build bookmarklets once.")
    build.add_argument("source", help="Directory containing the built scripts.")
    build.add_argument("-o", "--output", required=True, help="Directory for the bookmarklet outputs.")
    _add_build_flags(build)

    watch = subparsers.add_parser(
        "watch",
        help="Rebuild on change and serve the latest scripts for dynamic scripting.",
    )
    watch.add_argument("source", help="Directory containing the built scripts.")
    watch.add_argument("-o", "--output", required=True, help="Directory for the bookmarklet outputs.")
    _add_build_flags(watch)
    _add_server_flags(watch)
    watch.add_argument(
        "--no-dynamic-scripting",
        dest="dynamic_scripting",
        action="store_false",
        help="Only rebuild; do not start the delivery server.",
    )

    serve = subparsers.add_parser(
        "serve",
        help="Serve the scripts of a directory for dynamic scripting without writing outputs.",
    )
    serve.add_argument("source", help="Directory containing the built scripts.")
    _add_build_flags(serve)
    _add_server_flags(serve)
    return ap


def _build_options(args: argparse.Namespace) -> BuildOptions:
    try:
        include = re.compile(args.include)
    except re.error as exc:
        raise SystemExit(f"Invalid --include pattern: {exc}") from exc
    return BuildOptions(
        url_encode=args.url_encode,
        ensure_undefined=args.ensure_undefined,
        include=include,
        new_file=args.new_file,
        new_file_name=args.new_file_name,
        bookmarklets_list=args.bookmarklets_list,
        bookmarklets_list_name=args.list_name,
        remove_entry_file=args.remove_entry_file,
        dynamic_scripting=getattr(args, "dynamic_scripting", True),
    )


def _server_config(args: argparse.Namespace) -> ServerConfig:
    if args.stretching < 1:
        raise SystemExit("--stretching must be at least 1.")
    salt = args.salt if args.salt is not None else os.environ.get(SALT_ENV_VAR, DEFAULT_SALT)
    return ServerConfig(
        port=args.port,
        fallback_port=args.fallback_port,
        host=args.host,
        salt=salt,
        stretching=args.stretching,
    )


def _print_result(console: Console, result: BuildResult, *, dry: bool = False) -> None:
    count = len(result.bookmarklets)
    noun = "bookmarklet" if count == 1 else "bookmarklets"
    if dry:
        console.print(f"{PREFIX} Loaded {count} {noun}.")
    else:
        console.print(f"{PREFIX} Built {count} {noun}, wrote {len(result.written)} file(s).")
    for item in result.bookmarklets:
        console.print(f"  • {item.filename}", markup=False, highlight=False)
    for path in result.removed:
        console.print(f"  [dim]removed {escape(str(path))}[/dim]")


def _run_build(args: argparse.Namespace) -> int:
    set_debug_logging(args.debug)
    configure_logging()
    console = Console()
    options = _build_options(args)
    try:
        builder = BookmarkletBuilder(Path(args.source), Path(args.output), options)
        result = builder.build()
    except BuildError as exc:
        raise SystemExit(str(exc)) from exc
    _print_result(console, result)
    return 0


def _watch(builder: BookmarkletBuilder, *, dry: bool) -> int:
    console = Console()
    server = builder.server

    def _on_build(result: BuildResult) -> None:
        _print_result(console, result, dry=dry)

    def _on_error(exc: Exception) -> None:
        console.print(f"[bold red]{PREFIX} Build failed:[/bold red] {escape(str(exc))}", highlight=False)

    if server is not None and builder.options.dynamic_scripting:
        try:
            server.start()
        except (PortUnavailableError, DeliveryServerError) as exc:
            raise SystemExit(str(exc)) from exc
        print(f"Bookmarklets URL: {server.origin}/")
    print(f"Watching {builder.source_dir}")
    print("Press Ctrl+C to stop.\n")
    try:
        builder.watch(on_build=_on_build, on_error=_on_error)
    except KeyboardInterrupt:
        builder.stop()
    finally:
        if server is not None:
            server.close()
    return 0


def _run_watch(args: argparse.Namespace) -> int:
    set_debug_logging(args.debug)
    configure_logging()
    options = _build_options(args)
    server = DeliveryServer(_server_config(args)) if options.dynamic_scripting else None
    try:
        builder = BookmarkletBuilder(Path(args.source), Path(args.output), options, server=server)
    except BuildError as exc:
        raise SystemExit(str(exc)) from exc
    return _watch(builder, dry=False)


def _run_serve(args: argparse.Namespace) -> int:
    set_debug_logging(args.debug)
    configure_logging()
    server = DeliveryServer(_server_config(args))
    builder = BookmarkletBuilder(Path(args.source), None, _build_options(args), server=server)
    return _watch(builder, dry=True)


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0

    args = parser.parse_args(argv)
    if args.command == "build":
        return _run_build(args)
    if args.command == "watch":
        return _run_watch(args)
    if args.command == "serve":
        return _run_serve(args)
    parser.print_help()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Mapping

from watchdog.events import FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

from .render import render_list_page
from .server import DeliveryServer
from .templates import encode_uri_component, escape_html

DEFAULT_INCLUDE = re.compile(r"\.js$")
DEFAULT_NEW_FILE_NAME = "[path][name].bookmarklet[ext]"
DEFAULT_LIST_NAME = "bookmarklets.html"
UNDEFINED_SUFFIX = ";void 0;"

logger = logging.getLogger(__name__)


class BuildError(RuntimeError):
    """Raised when the bookmarklet outputs cannot be produced."""


@dataclass(frozen=True, slots=True)
class Bookmarklet:
    filename: str
    bookmarklet: str


@dataclass(slots=True)
class BuildResult:
    scripts: dict[str, str]
    bookmarklets: list[Bookmarklet] = field(default_factory=list)
    written: list[Path] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def collect_assets(
    source_dir: Path,
    include: re.Pattern[str] = DEFAULT_INCLUDE,
    *,
    exclude: Path | None = None,
) -> dict[str, str]:
    """Return ``{relative posix path: text}`` for every matching file under ``source_dir``."""
    source_dir = source_dir.expanduser().resolve()
    if not source_dir.is_dir():
        raise BuildError(f"Source directory not found: {source_dir}")
    excluded = exclude.expanduser().resolve() if exclude is not None else None
    assets: dict[str, str] = {}
    for path in sorted(p for p in source_dir.rglob("*") if p.is_file()):
        if excluded is not None and _is_within(path.resolve(), excluded):
            continue
        name = path.relative_to(source_dir).as_posix()
        if not include.search(name):
            continue
        try:
            assets[name] = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise BuildError(f"{name} is not a text file.") from exc
    return assets


def ensure_undefined(script: str) -> str:
    return f"{script}{UNDEFINED_SUFFIX}"


def to_bookmarklet(script: str, url_encode: bool = True) -> str:
    return f"javascript:{encode_uri_component(script) if url_encode else script}"


def expand_new_file_name(template: str, filename: str) -> str:
    parsed = PurePosixPath(filename)
    directory = parsed.parent.as_posix()
    path_prefix = "" if directory in ("", ".") else f"{directory}/"
    return (
        template.replace("[path]", path_prefix)
        .replace("[name]", parsed.stem)
        .replace("[ext]", parsed.suffix)
    )


def render_bookmarklets_list(bookmarklets: list[Bookmarklet]) -> str:
    """Static registration page; unlike the live index the href is escaped too."""
    items = (
        f'<li><a href="{escape_html(item.bookmarklet)}">{escape_html(item.filename)}</a></li>'
        for item in bookmarklets
    )
    return render_list_page(items)


@dataclass(slots=True)
class BuildOptions:
    url_encode: bool = True
    # Terminal completion value must be undefined or the browser navigates away.
    ensure_undefined: bool = True
    include: re.Pattern[str] = DEFAULT_INCLUDE
    new_file: bool = False
    new_file_name: str = DEFAULT_NEW_FILE_NAME
    bookmarklets_list: bool = False
    bookmarklets_list_name: str = DEFAULT_LIST_NAME
    remove_entry_file: bool = False
    dynamic_scripting: bool = True
    create_bookmarklets_list: Callable[[list[Bookmarklet]], str] = render_bookmarklets_list


class BookmarkletBuilder:
    """
    Turn the matching scripts of ``source_dir`` into bookmarklets.

    Every build pushes the scripts to ``server`` as one generation when the
    server is listening. ``output_dir`` may be None to only feed the server.
    """

    def __init__(
        self,
        source_dir: Path,
        output_dir: Path | None = None,
        options: BuildOptions | None = None,
        *,
        server: DeliveryServer | None = None,
    ) -> None:
        self.source_dir = source_dir.expanduser().resolve()
        self.output_dir = output_dir.expanduser().resolve() if output_dir is not None else None
        if self.output_dir is not None and self.output_dir == self.source_dir:
            raise BuildError("Output directory must differ from the source directory.")
        self.options = options or BuildOptions()
        self.server = server
        self._written: set[Path] = set()
        self._build_lock = threading.Lock()
        self._changed = threading.Event()
        self._stop = threading.Event()

    def build(self) -> BuildResult:
        with self._build_lock:
            return self._build()

    def _build(self) -> BuildResult:
        options = self.options
        server = self.server
        if server is not None:
            server.set_is_ready(False)

        assets = collect_assets(self.source_dir, options.include, exclude=self.output_dir)
        scripts = {
            name: ensure_undefined(text) if options.ensure_undefined else text
            for name, text in assets.items()
        }
        if server is not None and server.is_started():
            server.set_bookmarklet_sources(scripts.items())

        result = BuildResult(scripts=scripts)
        result.bookmarklets = [
            Bookmarklet(filename=name, bookmarklet=to_bookmarklet(script, options.url_encode))
            for name, script in scripts.items()
        ]
        output_dir = self.output_dir
        if output_dir is None:
            return result

        outputs: dict[str, str] = dict(scripts)
        for item in result.bookmarklets:
            if options.new_file:
                outputs[expand_new_file_name(options.new_file_name, item.filename)] = item.bookmarklet
            else:
                outputs[item.filename] = item.bookmarklet
            if options.remove_entry_file:
                outputs.pop(item.filename, None)
        if options.bookmarklets_list:
            render_list = options.create_bookmarklets_list
            outputs[options.bookmarklets_list_name] = render_list(result.bookmarklets)

        result.written = self._write_outputs(output_dir, outputs)
        result.removed = self._remove_stale(set(result.written))
        self._written = set(result.written)
        logger.debug("Wrote %d output file(s) to %s", len(result.written), output_dir)
        return result

    def _write_outputs(self, output_dir: Path, outputs: Mapping[str, str]) -> list[Path]:
        written: list[Path] = []
        for name, content in outputs.items():
            destination = (output_dir / name).resolve()
            if not _is_within(destination, output_dir):
                raise BuildError(f"Output path escapes the output directory: {name}")
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_text(content, encoding="utf-8")
            written.append(destination)
        return written

    def _remove_stale(self, current: set[Path]) -> list[Path]:
        removed: list[Path] = []
        for path in sorted(self._written - current):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed.append(path)
        return removed

    def request_rebuild(self) -> None:
        self._changed.set()

    def stop(self) -> None:
        self._stop.set()
        self._changed.set()

    def watch(
        self,
        *,
        debounce: float = 0.2,
        on_build: Callable[[BuildResult], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        """
        Build, then rebuild on every change below ``source_dir`` until stop().

        The delivery server is started first when dynamic scripting is on and
        is closed when watching ends.
        """
        server = self.server
        if server is not None and self.options.dynamic_scripting and not server.is_started():
            server.start()

        observer = PollingObserver()
        observer.schedule(_RebuildEventHandler(self), str(self.source_dir), recursive=True)
        observer.start()
        try:
            self._rebuild(on_build, on_error)
            while not self._stop.is_set():
                if not self._changed.wait(0.5):
                    continue
                time.sleep(debounce)
                self._changed.clear()
                if self._stop.is_set():
                    break
                self._rebuild(on_build, on_error)
        finally:
            observer.stop()
            observer.join()
            if server is not None:
                server.close()

    def _rebuild(
        self,
        on_build: Callable[[BuildResult], None] | None,
        on_error: Callable[[Exception], None] | None,
    ) -> None:
        try:
            result = self.build()
        except (BuildError, OSError, ValueError) as exc:
            # Server stays not-ready until a later build succeeds.
            if on_error is None:
                logger.error("Build failed: %s", exc)
            else:
                on_error(exc)
            return
        if on_build is not None:
            on_build(result)


class _RebuildEventHandler(FileSystemEventHandler):
    def __init__(self, builder: BookmarkletBuilder) -> None:
        self.builder = builder

    def on_any_event(self, event) -> None:  # type: ignore[override]
        if event.is_directory and event.event_type == "modified":
            return
        output_dir = self.builder.output_dir
        if output_dir is not None:
            paths = [Path(event.src_path)]
            dest_path = getattr(event, "dest_path", "")
            if dest_path:
                paths.append(Path(dest_path))
            if all(_is_within(path.resolve(), output_dir) for path in paths):
                return
        if event.event_type in {"opened", "closed", "closed_no_write"}:
            return
        self.builder.request_rebuild()


__all__ = [
    "Bookmarklet",
    "BookmarkletBuilder",
    "BuildError",
    "BuildOptions",
    "BuildResult",
    "collect_assets",
    "ensure_undefined",
    "expand_new_file_name",
    "render_bookmarklets_list",
    "to_bookmarklet",
]

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from http import HTTPStatus
from typing import Callable, Iterable
from urllib.parse import urlencode

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .hashing import DEFAULT_SALT, DEFAULT_STRETCHING, make_filename_hasher
from .logging_utils import build_uvicorn_log_config, debug_logging_enabled
from .ports import negotiate_port
from .render import IndexEntry, render_bootstrap, render_index, render_missing_file_script

DEFAULT_PORT = 3300
DEFAULT_HOST = "localhost"
STARTUP_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 5.0
JAVASCRIPT_MEDIA_TYPE = "text/javascript"
# Routes answer by path alone; the method never changes the response.
ANY_METHOD = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]

logger = logging.getLogger(__name__)


class DeliveryServerError(RuntimeError):
    """Raised when the delivery server cannot be started."""


@dataclass(frozen=True, slots=True)
class ServerConfig:
    port: int = DEFAULT_PORT
    fallback_port: bool = False
    host: str = DEFAULT_HOST
    salt: str = DEFAULT_SALT
    stretching: int = DEFAULT_STRETCHING
    create_filename_hash: Callable[[str], str] | None = None

    def filename_hasher(self) -> Callable[[str], str]:
        if self.create_filename_hash is not None:
            return self.create_filename_hash
        return make_filename_hasher(self.salt, self.stretching)


@dataclass(frozen=True, slots=True)
class BookmarkletSource:
    filename: str
    script: str
    hash: str


@dataclass(frozen=True, slots=True)
class Generation:
    """One build's worth of sources together with the readiness flag."""

    is_ready: bool = False
    sources: tuple[BookmarkletSource, ...] = ()

    def find(self, hash_value: str | None) -> BookmarkletSource | None:
        if not hash_value:
            return None
        for source in self.sources:
            if source.hash == hash_value:
                return source
        return None


@dataclass(slots=True)
class ServerState:
    host: str = DEFAULT_HOST
    current_port: int | None = None
    # Replaced as a whole; requests read it exactly once.
    generation: Generation = field(default_factory=Generation)

    @property
    def origin(self) -> str:
        if self.current_port is None:
            raise DeliveryServerError("Server has no port yet; call start() first.")
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.current_port}"


def file_url(origin: str, hash_value: str) -> str:
    return f"{origin}/file?{urlencode({'filename': hash_value})}"


def _plain_text_response(status_code: int) -> PlainTextResponse:
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        phrase = "Error"
    return PlainTextResponse(f"{status_code} {phrase}", status_code=status_code)


def create_app(state: ServerState) -> FastAPI:
    app = FastAPI(
        title="bmk delivery",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        redirect_slashes=False,
    )
    app.state.delivery = state

    @app.middleware("http")
    async def capture_generation(request: Request, call_next):
        generation = state.generation
        if not generation.is_ready:
            return _plain_text_response(503)
        request.state.generation = generation
        return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def plain_text_error(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        return _plain_text_response(exc.status_code)

    @app.api_route("/", methods=ANY_METHOD, response_class=HTMLResponse)
    async def index(request: Request) -> HTMLResponse:
        generation: Generation = request.state.generation
        origin = state.origin
        entries = [
            IndexEntry(
                display_name=f"[w] {source.filename}",
                bookmarklet_href=render_bootstrap(file_url(origin, source.hash)),
            )
            for source in generation.sources
        ]
        return HTMLResponse(render_index(entries))

    @app.api_route("/file", methods=ANY_METHOD)
    async def bookmarklet_file(
        request: Request,
        filename: str | None = Query(None),
    ) -> Response:
        generation: Generation = request.state.generation
        found = generation.find(filename)
        if found is None:
            # Loaded through a script tag: only executable JS reaches the user.
            return Response(render_missing_file_script(), media_type=JAVASCRIPT_MEDIA_TYPE)
        return Response(found.script, media_type=JAVASCRIPT_MEDIA_TYPE)

    return app


class DeliveryServer:
    """
    Serve the current generation of bookmarklet scripts over HTTP.

    The uvicorn listener runs on a daemon thread so the build pipeline keeps
    control of the calling thread. Phases move ``stopped -> starting ->
    listening`` and end in ``closed``.
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig()
        self.state = ServerState(host=self.config.host)
        self.app = create_app(self.state)
        self._hash_filename = self.config.filename_hasher()
        self._phase = "stopped"
        self._phase_lock = threading.Lock()
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._serve_error: BaseException | None = None

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def current_port(self) -> int | None:
        return self.state.current_port

    @property
    def origin(self) -> str:
        return self.state.origin

    def start(self, timeout: float = STARTUP_TIMEOUT) -> None:
        with self._phase_lock:
            if self._phase == "closed":
                raise DeliveryServerError("Server has been closed.")
            if self._phase != "stopped":
                raise DeliveryServerError("Server has already been started.")
            self._phase = "starting"
        try:
            port = negotiate_port(
                self.config.port,
                self.config.host,
                fallback=self.config.fallback_port,
            )
            server, thread = self._launch(port, timeout)
        except BaseException:
            with self._phase_lock:
                if self._phase == "starting":
                    self._phase = "stopped"
            raise
        with self._phase_lock:
            self._server = server
            self._thread = thread
            if self._phase != "starting":
                closed_while_starting = True
            else:
                closed_while_starting = False
                self._phase = "listening"
                self.state.current_port = port
        if closed_while_starting:
            self.close()
            return
        logger.info("Server started at %s", self.origin)

    def _launch(self, port: int, timeout: float) -> tuple[uvicorn.Server, threading.Thread]:
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=port,
            log_config=build_uvicorn_log_config(debug=debug_logging_enabled()),
        )
        server = uvicorn.Server(config)
        self._serve_error = None
        thread = threading.Thread(
            target=self._serve,
            args=(server,),
            name="bmk-delivery-server",
            daemon=True,
        )
        thread.start()
        deadline = time.monotonic() + timeout
        while not server.started:
            if not thread.is_alive():
                raise DeliveryServerError(
                    f"Failed to listen on {self.config.host}:{port}."
                ) from self._serve_error
            if time.monotonic() > deadline:
                server.should_exit = True
                raise DeliveryServerError(
                    f"Timed out after {timeout:.1f}s waiting for {self.config.host}:{port}."
                )
            time.sleep(0.01)
        return server, thread

    def _serve(self, server: uvicorn.Server) -> None:
        try:
            server.run()
        except (Exception, SystemExit) as exc:
            # uvicorn exits through SystemExit when the bind fails.
            self._serve_error = exc
            if server.started:
                logger.error("Delivery server stopped unexpectedly: %s", exc)

    def is_started(self) -> bool:
        thread = self._thread
        return self._phase == "listening" and thread is not None and thread.is_alive()

    def set_is_ready(self, ready: bool) -> None:
        self.state.generation = replace(self.state.generation, is_ready=ready)

    def set_bookmarklet_sources(self, scripts: Iterable[tuple[str, str]]) -> None:
        """
        Install a new generation built from ``(filename, script)`` pairs.

        The server reports not-ready while hashes are computed; the new sources
        and the ready flag then become visible together.
        """
        self.set_is_ready(False)
        sources: list[BookmarkletSource] = []
        seen: dict[str, str] = {}
        for filename, script in scripts:
            digest = self._hash_filename(filename)
            if digest in seen:
                raise ValueError(f"Filename hash collision between {seen[digest]!r} and {filename!r}")
            seen[digest] = filename
            sources.append(BookmarkletSource(filename=filename, script=script, hash=digest))
        self.state.generation = Generation(is_ready=True, sources=tuple(sources))
        logger.debug("Installed %d bookmarklet source(s)", len(sources))

    def close(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        with self._phase_lock:
            self._phase = "closed"
            server, thread = self._server, self._thread
            self._server = None
        self.state.generation = Generation()
        if server is None or thread is None:
            return
        server.should_exit = True
        try:
            thread.join(timeout)
        except RuntimeError as exc:
            logger.error("Error while closing the delivery server: %s", exc)
            return
        if thread.is_alive():
            logger.warning("Delivery server did not stop within %.1fs", timeout)
        elif self._serve_error is not None:
            logger.error("Delivery server closed with an error: %s", self._serve_error)
        else:
            logger.info("Server closed")


__all__ = [
    "BookmarkletSource",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "DeliveryServer",
    "DeliveryServerError",
    "Generation",
    "ServerConfig",
    "ServerState",
    "create_app",
    "file_url",
]

"""HTTPS static asset server for the in-browser test suite.

The server runs as a background task on the caller's event loop. ``start()``
only returns once the listening socket is bound and uvicorn finished its
startup, so a returned handle means browsers can be pointed at it.
"""

from __future__ import annotations

import asyncio
import html
import os
import socket
import stat
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import quote

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import URL

from .certs import CertificatePair
from .errors import BindError

ISOLATION_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Embedder-Policy": "require-corp",
    "Access-Control-Allow-Origin": "*",
}

INDEX_FILE = "index.html"


class ListingStaticFiles(StaticFiles):
    """StaticFiles that falls back to a directory listing when there is no index file."""

    async def get_response(self, path: str, scope: Any):
        if scope["method"] in ("GET", "HEAD"):
            full_path, stat_result = await run_in_threadpool(self.lookup_path, path)
            if (
                stat_result is not None
                and stat.S_ISDIR(stat_result.st_mode)
                and not os.path.isfile(os.path.join(full_path, INDEX_FILE))
            ):
                url = URL(scope=scope)
                if not url.path.endswith("/"):
                    return RedirectResponse(url=url.replace(path=url.path + "/"))
                listing = await run_in_threadpool(_render_listing, full_path, url.path)
                return HTMLResponse(listing)
        return await super().get_response(path, scope)


def _render_listing(directory: str, url_path: str) -> str:
    entries = []
    with os.scandir(directory) as it:
        for entry in it:
            name = entry.name + ("/" if entry.is_dir() else "")
            entries.append(name)
    entries.sort(key=lambda n: (not n.endswith("/"), n.lower()))

    title = html.escape(f"Index of {url_path}")
    rows = [f'<li><a href="{quote(name)}">{html.escape(name)}</a></li>' for name in entries]
    if url_path != "/":
        rows.insert(0, '<li><a href="../">../</a></li>')
    return (
        f"<!doctype html><html><head><meta charset='utf-8'><title>{title}</title></head>"
        f"<body><h1>{title}</h1><ul>{''.join(rows)}</ul></body></html>"
    )


def create_app(root_path: str | Path) -> FastAPI:
    """Build the ASGI app serving ``root_path`` with cross-origin isolation headers."""
    app = FastAPI(title="browser-ci asset server", docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def isolation_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in ISOLATION_HEADERS.items():
            response.headers[name] = value
        return response

    app.mount("/", ListingStaticFiles(directory=str(root_path), html=True), name="assets")
    return app


class _AssetUvicornServer(uvicorn.Server):
    """uvicorn server that signals a one-shot event once startup completed."""

    def __init__(self, config: uvicorn.Config, ready: asyncio.Event):
        super().__init__(config)
        self._ready = ready

    async def startup(self, sockets: list[socket.socket] | None = None) -> None:
        await super().startup(sockets=sockets)
        if self.started and not self.should_exit:
            self._ready.set()


class ServerHandle:
    """Handle to a running asset server. ``stop`` is the only operation."""

    def __init__(
        self,
        server: _AssetUvicornServer,
        task: asyncio.Task,
        port: int,
        cert_dir: tempfile.TemporaryDirectory,
        logger: Any,
    ):
        self._server = server
        self._task = task
        self._cert_dir = cert_dir
        self._stopped = False
        self.port = port
        self.logger = logger

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def stop(self, grace_period: float = 30.0) -> None:
        """Drain in-flight requests for up to ``grace_period`` seconds, then close."""
        if self._stopped:
            self.logger.warning("Asset server stop requested twice; ignoring", port=self.port)
            return
        self._stopped = True

        self.logger.info("Stopping asset server", port=self.port, grace_period=grace_period)
        self._server.config.timeout_graceful_shutdown = max(0.0, float(grace_period))
        self._server.should_exit = True
        try:
            await self._task
        except Exception as e:
            # Runs after outcomes are collected; never masks them.
            self.logger.error("Asset server exited with an error", port=self.port, error=repr(e))
        finally:
            self._cert_dir.cleanup()
        self.logger.info("Asset server stopped", port=self.port)


class AssetServer:
    """Serves a file tree over HTTPS on a fixed port."""

    def __init__(
        self,
        root_path: str | Path,
        port: int,
        certificate: CertificatePair,
        host: str = "0.0.0.0",
        log_level: str = "warning",
        logger: Any = None,
    ):
        self.root_path = Path(root_path)
        self.port = port
        self.host = host
        self.certificate = certificate
        self.log_level = log_level
        self.logger = logger or structlog.get_logger(__name__)

    def _bind_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except (OSError, OverflowError) as e:
            sock.close()
            raise BindError(f"Could not bind {self.host}:{self.port}: {e}") from e
        return sock

    async def start(self) -> ServerHandle:
        """Bind the listener and return once the server accepts connections.

        Raises:
            BindError: the root is not a directory, the TLS material cannot be
                loaded, the port cannot be bound, or the server dies during startup.
        """
        if not self.root_path.is_dir():
            raise BindError(f"Asset root is not a directory: {self.root_path}")

        cert_dir = tempfile.TemporaryDirectory(prefix="browser-ci-tls-")
        try:
            certfile, keyfile = self.certificate.write_to(cert_dir.name)
            config = uvicorn.Config(
                create_app(self.root_path),
                host=self.host,
                port=self.port,
                ssl_certfile=certfile,
                ssl_keyfile=keyfile,
                lifespan="off",
                log_level=self.log_level,
            )
            try:
                config.load()
            except OSError as e:
                # ssl.SSLError is an OSError
                raise BindError(f"Could not load TLS material: {e}") from e
            sock = self._bind_socket()
        except BaseException:
            cert_dir.cleanup()
            raise

        port = int(sock.getsockname()[1])
        self.logger.info("Static HTTPS server starting", root=str(self.root_path), port=port)

        ready = asyncio.Event()
        server = _AssetUvicornServer(config, ready)
        serve_task = asyncio.create_task(server.serve(sockets=[sock]), name="asset-server")
        ready_task = asyncio.create_task(ready.wait(), name="asset-server-ready")
        await asyncio.wait({serve_task, ready_task}, return_when=asyncio.FIRST_COMPLETED)

        if not ready.is_set():
            ready_task.cancel()
            await asyncio.gather(ready_task, return_exceptions=True)
            sock.close()
            cert_dir.cleanup()
            exc = None if serve_task.cancelled() else serve_task.exception()
            raise BindError(f"Asset server exited during startup: {exc!r}") from exc

        self.logger.info("Serving", url=f"https://localhost:{port}")
        return ServerHandle(server, serve_task, port, cert_dir, self.logger)

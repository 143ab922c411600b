"""
External user-agent boundary for the browser-delegated flow.

The identity client hands a URL to a UserAgent and gets back the redirect URL the provider
sent the browser to. LoopbackBrowserAgent opens the system browser and catches the redirect
with a small FastAPI app served by uvicorn on the redirect URI's host and port.
"""
import asyncio
import html
import logging
import socket
import webbrowser
from typing import Callable, Protocol
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from auth_session.errors import NetworkError

logger = logging.getLogger(__name__)


class UserAgent(Protocol):
    async def authorize(self, authorize_url: str, redirect_uri: str) -> str:
        """Drive the user through authorize_url; return the full redirect URL (with query)."""
        ...

    async def end_session(self, logout_url: str, return_to: str | None) -> None:
        """Send the browser to logout_url; return once the provider redirects to return_to."""
        ...


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
</body>
</html>""",
        status_code=status_code,
    )


def create_callback_app(on_redirect: Callable[[str], None], *, paths: set[str]) -> FastAPI:
    """
    App answering the provider's redirects. Every GET on one of paths hands the full URL
    to on_redirect; the page only tells the user to return to the application.
    """
    app = FastAPI(title="Auth Session Callback", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/health")
    def health():
        return {"status": "ok", "service": "auth_session_callback"}

    @app.get("/{path:path}", response_class=HTMLResponse)
    def redirected(path: str, request: Request):
        if f"/{path}" not in paths:
            return _page("Not found", "Unknown callback path.", status_code=404)
        on_redirect(str(request.url))
        if request.query_params.get("error"):
            desc = request.query_params.get("error_description") or request.query_params["error"]
            return _page("Login error", desc, status_code=400)
        return _page("Done", "You can close this window and return to the application.")

    return app


def _bind(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


class LoopbackBrowserAgent:
    """System browser plus a one-shot loopback server per flow."""

    def __init__(self, *, open_browser: Callable[[str], bool] = webbrowser.open, startup_timeout: float = 5.0):
        self._open_browser = open_browser
        self._startup_timeout = startup_timeout

    async def authorize(self, authorize_url: str, redirect_uri: str) -> str:
        return await self._round_trip(authorize_url, redirect_uri)

    async def end_session(self, logout_url: str, return_to: str | None) -> None:
        if not return_to:
            await self._open(logout_url)
            return
        await self._round_trip(logout_url, return_to)

    async def _open(self, url: str) -> None:
        # webbrowser.open can block while spawning the browser process
        opened = await asyncio.get_running_loop().run_in_executor(None, self._open_browser, url)
        if not opened:
            raise NetworkError("Could not open a browser for the provider flow")

    async def _round_trip(self, url: str, listen_uri: str) -> str:
        parsed = urlparse(listen_uri)
        host = parsed.hostname or "127.0.0.1"
        port = parsed.port or 80
        loop = asyncio.get_running_loop()
        redirected: asyncio.Future[str] = loop.create_future()

        def on_redirect(value: str) -> None:
            loop.call_soon_threadsafe(lambda: redirected.done() or redirected.set_result(value))

        try:
            sock = _bind(host, port)
        except OSError as e:
            raise NetworkError(f"Could not listen on {host}:{port} for the redirect: {e}") from e

        app = create_callback_app(on_redirect, paths={parsed.path or "/"})
        server = uvicorn.Server(uvicorn.Config(app, log_level="warning"))
        serve_task = asyncio.create_task(server.serve(sockets=[sock]))
        try:
            await self._wait_started(server, serve_task)
            logger.info("Waiting for browser redirect on %s:%s%s", host, port, parsed.path)
            await self._open(url)
            return await redirected
        finally:
            server.should_exit = True
            await asyncio.gather(serve_task, return_exceptions=True)
            sock.close()

    async def _wait_started(self, server: uvicorn.Server, serve_task: asyncio.Task) -> None:
        deadline = asyncio.get_running_loop().time() + self._startup_timeout
        while not server.started:
            if serve_task.done():
                raise NetworkError("Loopback callback server stopped during startup")
            if asyncio.get_running_loop().time() > deadline:
                raise NetworkError("Loopback callback server did not start in time")
            await asyncio.sleep(0.05)

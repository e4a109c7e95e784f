#!/usr/bin/env python3
"""Small aiohttp API for the watcher status, settings and devices."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any

from aiohttp import web
from aiohttp.web import AppKey

WATCHER_KEY: AppKey[Any] = web.AppKey("watcher", object)


def _watcher(request: web.Request) -> Any:
    return request.app[WATCHER_KEY]


async def _in_thread(func, *args, **kwargs):
    # Watcher calls block on the lifecycle thread.
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def build_app(watcher: Any) -> web.Application:
    log = logging.getLogger("web_status")
    app = web.Application()
    app[WATCHER_KEY] = watcher

    async def status_api(request: web.Request) -> web.Response:
        payload = await _in_thread(_watcher(request).status)
        return web.json_response(payload)

    async def settings_get(request: web.Request) -> web.Response:
        return web.json_response(_watcher(request).settings.to_dict())

    async def settings_update(request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except Exception as exc:
            log.warning("settings_update: invalid JSON payload: %s", exc)
            raise web.HTTPBadRequest(reason="Invalid JSON payload") from exc
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(reason="Expected a JSON object")
        try:
            settings = await _in_thread(_watcher(request).update_settings, **data)
        except ValueError as exc:
            return web.json_response({"ok": False, "error": str(exc)}, status=400)
        log.info("settings updated: %s", ", ".join(sorted(data)))
        return web.json_response({"ok": True, "settings": settings.to_dict()})

    async def devices_get(request: web.Request) -> web.Response:
        payload = await _in_thread(_watcher(request).devices)
        return web.json_response(payload)

    async def devices_refresh(request: web.Request) -> web.Response:
        payload = await _in_thread(_watcher(request).refresh_devices)
        return web.json_response(payload)

    async def watcher_restart(request: web.Request) -> web.Response:
        started = await _in_thread(_watcher(request).restart)
        status = 200 if started else 500
        return web.json_response({"ok": bool(started)}, status=status)

    app.router.add_get("/api/status", status_api)
    app.router.add_get("/api/settings", settings_get)
    app.router.add_post("/api/settings", settings_update)
    app.router.add_get("/api/devices", devices_get)
    app.router.add_post("/api/devices/refresh", devices_refresh)
    app.router.add_post("/api/watcher/restart", watcher_restart)
    return app


class WebStatusHandle:
    """Handle returned by start_web_status_in_thread(). Call stop() to shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.app = app

    def stop(self, timeout: float = 5.0) -> None:
        # The server thread cleans up the runner once its loop stops.
        if not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        logging.getLogger("web_status").info("web_status stopped")


def start_web_status_in_thread(
    watcher: Any,
    host: str = "127.0.0.1",
    port: int = 8765,
    *,
    access_log: bool = False,
    log_level: str = "INFO",
) -> WebStatusHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    log = logging.getLogger("web_status")

    loop = asyncio.new_event_loop()
    app_box = {}
    failure_box = {}

    def _run():
        asyncio.set_event_loop(loop)
        app = build_app(watcher)
        runner = web.AppRunner(app, access_log=log if access_log else None)
        try:
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except OSError as exc:
            log.error("web_status failed to bind %s:%s: %s", host, port, exc)
            failure_box["error"] = exc
            loop.run_until_complete(runner.cleanup())
            loop.close()
            return
        app_box["app"] = app
        log.info("web_status started on %s:%s", host, port)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception as exc:
                log.warning("Error during aiohttp runner cleanup: %r", exc)
            loop.close()

    t = threading.Thread(target=_run, name="web_status", daemon=True)
    t.start()

    while "app" not in app_box and "error" not in failure_box:
        time.sleep(0.05)
    if "error" in failure_box:
        raise failure_box["error"]

    return WebStatusHandle(t, loop, app_box["app"])

"""Localhost dashboard: FastAPI app streaming run events over SSE."""

from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import logging
import socket
import webbrowser
from pathlib import Path
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, StreamingResponse

from qawatch.metrics.sink import JsonMetricsSink, empty_metrics
from qawatch.state.broadcaster import EventBroadcaster
from qawatch.state.events import SERVER_SHUTDOWN

logger = logging.getLogger(__name__)

MAX_PORT_ATTEMPTS = 5
QUEUE_SIZE = 1000


class QueueObserver:
    """Buffers messages for one SSE client.

    ``send`` never waits; a client that falls ``QUEUE_SIZE`` messages behind
    raises ``QueueFull`` and is dropped by the broadcaster.
    """

    def __init__(self, maxsize: int = QUEUE_SIZE):
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)

    async def send(self, message: dict[str, Any]) -> None:
        self.queue.put_nowait(message)


def format_sse(message: dict[str, Any]) -> str:
    return f"data: {json.dumps(message, default=str)}\n\n"


async def event_stream(
    broadcaster: EventBroadcaster, queue_size: int = QUEUE_SIZE
) -> AsyncIterator[str]:
    """Yield SSE frames for one client until the channel shuts down."""
    observer = QueueObserver(queue_size)
    subscription = await broadcaster.subscribe(observer)
    try:
        while True:
            message = await observer.queue.get()
            yield format_sse(message)
            if message["type"] == SERVER_SHUTDOWN:
                break
    finally:
        broadcaster.unsubscribe(subscription)


def create_app(broadcaster: EventBroadcaster, metrics_path: Path | None = None) -> FastAPI:
    """Build the dashboard app around a broadcaster."""
    app = FastAPI(title="qawatch dashboard", docs_url=None, redoc_url=None)

    @app.get("/", response_class=HTMLResponse)
    async def index():
        return _get_dashboard_html()

    @app.get("/health")
    async def health():
        return {"status": "ok", "clients": broadcaster.observer_count}

    @app.get("/api/state")
    async def state():
        return broadcaster.store.snapshot()

    @app.get("/api/metrics")
    async def metrics():
        if metrics_path is None:
            return empty_metrics()
        return JsonMetricsSink(path=metrics_path).load()

    @app.get("/events")
    async def events():
        return StreamingResponse(
            event_stream(broadcaster),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app


def find_free_port(host: str, port: int, attempts: int = MAX_PORT_ATTEMPTS) -> int:
    """Return the first bindable port in ``port .. port + attempts - 1``."""
    for candidate in range(port, port + attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, candidate))
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    raise
                logger.info("Port %d in use, trying %d", candidate, candidate + 1)
                continue
        return candidate
    raise OSError(
        errno.EADDRINUSE,
        f"No free port in {port}-{port + attempts - 1}",
    )


class NullChannel:
    """Stands in for the dashboard when it is disabled or cannot start."""

    url = None

    def __init__(self, broadcaster: EventBroadcaster):
        self.broadcaster = broadcaster

    async def start(self, open_browser: bool = False) -> None:
        return None

    async def stop(self) -> None:
        await self.broadcaster.shutdown()


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to its host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class DashboardServer:
    """Runs the dashboard app on the current event loop."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        *,
        host: str = "127.0.0.1",
        port: int = 3000,
        metrics_path: Path | None = None,
    ):
        self.broadcaster = broadcaster
        self.host = host
        self.port = port
        self.app = create_app(broadcaster, metrics_path)
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    async def start(self, open_browser: bool = False) -> str:
        """Start serving in the background and return the dashboard URL."""
        self.port = find_free_port(self.host, self.port)
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve())

        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise RuntimeError("Dashboard server exited during startup")
            await asyncio.sleep(0.05)

        logger.info("Dashboard running at %s", self.url)
        if open_browser:
            webbrowser.open(self.url)
        return self.url

    async def serve_forever(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """Notify clients, then stop the server."""
        await self.broadcaster.shutdown()
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            await self._task
        self._server = None
        self._task = None
        logger.info("Dashboard stopped")


def _get_dashboard_html() -> str:
    template_path = Path(__file__).parent / "template.html"
    if template_path.exists():
        return template_path.read_text()
    return _EMBEDDED_HTML


_EMBEDDED_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>qawatch</title>
<style>
* { margin: 0; padding: 0; box-sizing: border-box; }
body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #0d1117; color: #c9d1d9; }
.header { background: #161b22; border-bottom: 1px solid #30363d; padding: 16px 24px; display: flex; justify-content: space-between; align-items: center; }
.header h1 { font-size: 20px; color: #58a6ff; }
.status { font-size: 13px; color: #8b949e; }
.status.running { color: #d29922; }
.status.complete { color: #3fb950; }
.status.stopped { color: #f85149; }
.content { max-width: 1000px; margin: 0 auto; padding: 24px; }
.stats { display: grid; grid-template-columns: repeat(auto-fit, minmax(180px, 1fr)); gap: 16px; margin-bottom: 24px; }
.stat { background: #161b22; padding: 16px; border-radius: 8px; border: 1px solid #30363d; }
.stat-name { font-size: 12px; color: #8b949e; text-transform: uppercase; letter-spacing: 1px; }
.stat-value { font-size: 24px; font-weight: bold; margin-top: 8px; }
.panel { background: #161b22; border-radius: 12px; border: 1px solid #30363d; overflow: hidden; margin-bottom: 24px; }
.panel h2 { font-size: 14px; padding: 12px 16px; border-bottom: 1px solid #30363d; color: #8b949e; }
.issue { display: flex; align-items: center; padding: 10px 16px; border-bottom: 1px solid #21262d; gap: 12px; }
.issue:last-child { border-bottom: none; }
.sev { width: 10px; height: 10px; border-radius: 50%; flex-shrink: 0; background: #58a6ff; }
.sev.critical { background: #f85149; }
.sev.high { background: #d29922; }
.issue-type { font-family: monospace; min-width: 160px; color: #8b949e; }
.issue-msg { flex: 1; }
.issue-loc { font-family: monospace; font-size: 12px; color: #8b949e; }
.issue.fixing .issue-msg::after { content: ' (fixing)'; color: #d29922; }
.issue.failed .issue-msg::after { content: ' (failed)'; color: #f85149; }
.log { font-family: monospace; font-size: 12px; padding: 4px 16px; }
.log.warning { color: #d29922; }
.log.error { color: #f85149; }
.log.success { color: #3fb950; }
.empty { padding: 16px; color: #8b949e; }
</style>
</head>
<body>
<div class="header"><h1>qawatch</h1><span id="status" class="status">waiting for run...</span></div>
<div class="content">
  <div class="stats">
    <div class="stat"><div class="stat-name">Cycle</div><div class="stat-value" id="cycle">-</div></div>
    <div class="stat"><div class="stat-name">Fixed</div><div class="stat-value" id="fixed">0</div></div>
    <div class="stat"><div class="stat-name">Outstanding</div><div class="stat-value" id="outstanding">0</div></div>
    <div class="stat"><div class="stat-name">Cost</div><div class="stat-value" id="cost">$0.00</div></div>
  </div>
  <div class="panel"><h2>Outstanding issues</h2><div id="issues"><div class="empty">No issues yet.</div></div></div>
  <div class="panel"><h2>Log</h2><div id="logs"></div></div>
</div>
<script>
const state = { cycle: 0, maxCycles: 0, fixed: 0, cost: 0, issues: {}, status: 'idle' };

function esc(s) { const d = document.createElement('div'); d.textContent = s == null ? '' : String(s); return d.innerHTML; }

function render() {
  document.getElementById('cycle').textContent = state.cycle ? state.cycle + '/' + state.maxCycles : '-';
  document.getElementById('fixed').textContent = state.fixed;
  document.getElementById('cost').textContent = '$' + state.cost.toFixed(2);
  const issues = Object.values(state.issues);
  document.getElementById('outstanding').textContent = issues.length;
  document.getElementById('issues').innerHTML = issues.length ? issues.map(i =>
    '<div class="issue ' + esc(i.status) + '"><span class="sev ' + esc(i.severity) + '"></span>' +
    '<span class="issue-type">' + esc(i.type) + '</span><span class="issue-msg">' + esc(i.message) + '</span>' +
    '<span class="issue-loc">' + esc(i.file) + ':' + esc(i.line) + '</span></div>').join('') :
    '<div class="empty">No outstanding issues.</div>';
  const el = document.getElementById('status');
  el.textContent = state.status;
  el.className = 'status ' + state.status;
}

function log(message, level) {
  const row = document.createElement('div');
  row.className = 'log ' + (level || 'info');
  row.textContent = new Date().toLocaleTimeString() + '  ' + message;
  const logs = document.getElementById('logs');
  logs.prepend(row);
  while (logs.children.length > 100) logs.removeChild(logs.lastChild);
}

const handlers = {
  state_sync(d) {
    state.cycle = d.cycle; state.maxCycles = d.max_cycles; state.fixed = d.total_fixed;
    state.cost = d.total_cost; state.status = d.status; state.issues = {};
    d.outstanding_issues.forEach(i => { state.issues[i.id] = i; });
    d.logs.forEach(l => log(l.message, l.level));
  },
  run_started(d) { Object.assign(state, { cycle: 0, maxCycles: d.max_cycles, fixed: 0, cost: 0, issues: {}, status: 'running' }); },
  cycle_started(d) { state.cycle = d.cycle; state.maxCycles = d.max_cycles; },
  detection_complete(d) { state.issues = {}; d.issues.forEach(i => { state.issues[i.id] = Object.assign({ status: 'detected' }, i); }); },
  fix_started(d) { d.issue_ids.forEach(id => { if (state.issues[id]) state.issues[id].status = 'fixing'; }); },
  fix_complete(d) {
    d.fixed.forEach(id => { delete state.issues[id]; });
    d.failed.forEach(id => { if (state.issues[id]) state.issues[id].status = 'failed'; });
    state.fixed += d.fixed.length;
  },
  cost_update(d) { state.cost = Math.max(state.cost, d.total_cost); },
  run_complete(d) { state.status = d.status; log('Run ' + d.status + ': ' + d.reason, d.status === 'complete' ? 'success' : 'warning'); },
  log_entry(d) { log(d.message, d.level); },
  server_shutdown() { log('Server shut down', 'warning'); source.close(); },
};

const source = new EventSource('/events');
source.onmessage = (e) => {
  const msg = JSON.parse(e.data);
  const handler = handlers[msg.type];
  if (handler) { handler(msg.data); render(); }
};
render();
</script>
</body>
</html>
"""

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

import notifier

logger = logging.getLogger(__name__)

HEALTH_PATH = "/healthz"


class HealthHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        self._respond(send_body=True)

    def do_HEAD(self):
        self._respond(send_body=False)

    def _respond(self, send_body: bool) -> None:
        if urlsplit(self.path).path != HEALTH_PATH:
            self._reply(404, b"not found", send_body)
            return

        if self.server.liveness.healthy:
            self._reply(200, b"ok", send_body)
        else:
            self._reply(500, b"unhealthy", send_body)

    def _reply(self, status: int, body: bytes, send_body: bool = True) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if send_body:
            self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


class HealthServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, liveness: notifier.LivenessNotifier, port: int, host: str = "0.0.0.0"):
        super().__init__((host, port), HealthHandler)
        self.liveness = liveness


def make_server(liveness: notifier.LivenessNotifier, port: int, host: str = "0.0.0.0") -> HealthServer:
    return HealthServer(liveness, port, host)


def start_health_server(liveness: notifier.LivenessNotifier, port: int, host: str = "0.0.0.0") -> HealthServer:
    server = make_server(liveness, port, host)
    thread = threading.Thread(target=server.serve_forever, name="healthz", daemon=True)
    thread.start()
    logger.info("Health checks listening on %s:%s%s", host, server.server_address[1], HEALTH_PATH)
    return server

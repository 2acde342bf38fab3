"""Main HTTP server entry point and connection lifecycle orchestration."""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import signal
import socket
import threading
import time
from collections.abc import Sequence

from config import (
    DRAIN_TIMEOUT_SECS,
    HOST,
    INDEX_FALLBACKS,
    KEEPALIVE_TIMEOUT_SECS,
    LISTEN_BACKLOG,
    LOG_FORMAT,
    LOG_FORMATS,
    LOG_LEVEL,
    MAX_KEEPALIVE_REQUESTS,
    PORT,
    REQUEST_QUEUE_SIZE,
    SOCKET_TIMEOUT_SECS,
    SYMLINK_POLICIES,
    WORKER_COUNT,
    ServerConfig,
)
from content_store import PreloadError, load_directory
from request import HTTPRequest, HTTPRequestParseError
from response import HTTPResponse
from router import Router
from socket_handler import (
    READ_ERROR_STATUS,
    HTTPReadError,
    read_http_request_message,
    write_http_response_message,
)
from thread_pool import ThreadPool

logger = logging.getLogger(__name__)


class HTTPServer:
    def __init__(
        self,
        router: Router,
        host: str = HOST,
        port: int = PORT,
        worker_count: int = WORKER_COUNT,
        request_queue_size: int = REQUEST_QUEUE_SIZE,
        *,
        keepalive_timeout_secs: int = KEEPALIVE_TIMEOUT_SECS,
        drain_timeout_secs: float = DRAIN_TIMEOUT_SECS,
        log_format: str = LOG_FORMAT,
    ) -> None:
        if log_format not in LOG_FORMATS:
            raise ValueError(f"Unsupported log format: {log_format}")
        self.router = router
        self.host = host
        self.port = port
        self.worker_count = worker_count
        self.request_queue_size = request_queue_size
        self.keepalive_timeout_secs = keepalive_timeout_secs
        self.drain_timeout_secs = drain_timeout_secs
        self.log_format = log_format

        self._server_socket: socket.socket | None = None
        self._pool: ThreadPool | None = None
        self._running = False
        self._draining = False
        self._stop_requested = threading.Event()

    @classmethod
    def from_config(cls, config: ServerConfig) -> "HTTPServer":
        """Preload the served tree and build a server around it.

        Raises PreloadError before any socket is opened when the tree
        cannot be loaded completely.
        """
        config.validate()
        store = load_directory(config.root_dir, symlink_policy=config.symlink_policy)
        router = Router(
            store,
            redirect_http=config.redirect_http,
            index_fallback=config.index_fallback,
        )
        return cls(
            router,
            host=config.address,
            port=config.port,
            worker_count=config.worker_count,
            request_queue_size=config.request_queue_size,
            keepalive_timeout_secs=config.keepalive_timeout_secs,
            drain_timeout_secs=config.drain_timeout_secs,
            log_format=config.log_format,
        )

    def start(self) -> None:
        """Listen and serve until stop() is called."""
        family = socket.AF_INET
        if ipaddress.ip_address(self.host).version == 6:
            family = socket.AF_INET6
        with socket.socket(family, socket.SOCK_STREAM) as server_socket:
            self._server_socket = server_socket
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_socket.bind((self.host, self.port))
            server_socket.listen(LISTEN_BACKLOG)
            server_socket.settimeout(0.2)
            self._pool = ThreadPool(
                worker_count=self.worker_count,
                queue_size=self.request_queue_size,
                handler=self._handle_client,
            )
            self._pool.start()

            self._running = True
            self.port = server_socket.getsockname()[1]
            logger.info("Starting httpserve on %s:%s", self.host, self.port)
            try:
                while not self._stop_requested.is_set():
                    try:
                        client_socket, address = server_socket.accept()
                    except socket.timeout:
                        continue
                    except OSError:
                        break

                    if not self._pool.submit(client_socket, address):
                        self._send_queue_full_response(client_socket, address)
            finally:
                self._running = False
                self._draining = True
                self._pool.shutdown(drain_timeout=self.drain_timeout_secs)
                self._pool = None
                logger.info("Server stopped")

    def stop(self) -> None:
        """Stop accepting connections; start() returns once in-flight work drains."""
        if self._running:
            logger.info("Shutting down, draining in-flight requests")
        self._draining = True
        self._running = False
        self._stop_requested.set()
        if self._server_socket is not None:
            self._server_socket.close()
            self._server_socket = None

    def _send_queue_full_response(
        self,
        client_socket: socket.socket,
        address: tuple[str, int],
    ) -> None:
        with client_socket:
            started_at = time.perf_counter()
            response = HTTPResponse(status_code=503, headers={"Connection": "close"})
            try:
                bytes_sent = write_http_response_message(client_socket, response)
            except OSError:
                return
            self._record_and_log(
                address=address,
                method="-",
                path="-",
                response=response,
                bytes_out=bytes_sent,
                started_at=started_at,
            )

    def _handle_client(self, client_socket: socket.socket, address: tuple[str, int]) -> None:
        with client_socket:
            client_socket.settimeout(min(SOCKET_TIMEOUT_SECS, self.keepalive_timeout_secs))
            request_count = 0
            carry = b""
            while request_count < MAX_KEEPALIVE_REQUESTS:
                started_at = time.perf_counter()
                try:
                    raw_request, carry = read_http_request_message(client_socket, carry)
                except HTTPReadError as exc:
                    status_code = READ_ERROR_STATUS.get(type(exc), 400)
                    logger.debug("Read error from %s: %s", address[0], exc)
                    self._reject(client_socket, address, status_code, started_at)
                    return
                except OSError:
                    return

                if not raw_request:
                    return

                try:
                    request = HTTPRequest.from_bytes(raw_request)
                except HTTPRequestParseError as exc:
                    logger.debug("Rejected request from %s: %s", address[0], exc)
                    self._reject(client_socket, address, exc.status_code, started_at)
                    return

                request_count += 1
                response = self._dispatch(request)
                should_close = (
                    not request.keep_alive
                    or request_count >= MAX_KEEPALIVE_REQUESTS
                    or self._draining
                )
                if should_close:
                    response.headers.setdefault("Connection", "close")
                else:
                    response.headers.setdefault("Connection", "keep-alive")
                    response.headers.setdefault(
                        "Keep-Alive",
                        (
                            f"timeout={self.keepalive_timeout_secs}, "
                            f"max={MAX_KEEPALIVE_REQUESTS - request_count}"
                        ),
                    )

                try:
                    bytes_sent = write_http_response_message(client_socket, response)
                except OSError as exc:
                    logger.debug("Write to %s failed: %s", address[0], exc)
                    return

                self._record_and_log(
                    address=address,
                    method=request.method,
                    path=request.raw_target,
                    response=response,
                    bytes_out=bytes_sent,
                    started_at=started_at,
                )
                if should_close:
                    return

    def _reject(
        self,
        client_socket: socket.socket,
        address: tuple[str, int],
        status_code: int,
        started_at: float,
    ) -> None:
        response = HTTPResponse(status_code=status_code, headers={"Connection": "close"})
        try:
            bytes_sent = write_http_response_message(client_socket, response)
        except OSError:
            return
        self._record_and_log(
            address=address,
            method="-",
            path="-",
            response=response,
            bytes_out=bytes_sent,
            started_at=started_at,
        )

    def _dispatch(self, request: HTTPRequest) -> HTTPResponse:
        try:
            return self.router.handle(request)
        except Exception:
            logger.exception("Unhandled error while routing %s %s", request.method, request.path)
            return HTTPResponse(status_code=500)

    def _record_and_log(
        self,
        *,
        address: tuple[str, int],
        method: str,
        path: str,
        response: HTTPResponse,
        bytes_out: int,
        started_at: float,
    ) -> None:
        duration_ms = (time.perf_counter() - started_at) * 1000
        if self.log_format == "json":
            event = {
                "client": address[0],
                "method": method,
                "path": path,
                "status": response.status_code,
                "bytes_out": bytes_out,
                "latency_ms": round(duration_ms, 3),
            }
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            "client=%s method=%s path=%s status=%s bytes_out=%s duration_ms=%.2f",
            address[0],
            method,
            path,
            response.status_code,
            bytes_out,
            duration_ms,
        )


def _ip_literal(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid IP address: {value!r}") from exc


def _port_number(value: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid port number: {value!r}") from exc
    if not 0 <= port <= 65_535:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="httpserve",
        description="Serve files from a directory, preloaded into memory",
    )
    parser.add_argument("dir", metavar="DIR", help="directory to serve")
    parser.add_argument("-p", "--port", type=_port_number, default=PORT)
    parser.add_argument("-a", "--address", type=_ip_literal, default=HOST)
    parser.add_argument(
        "-r",
        "--redirect-http",
        action="store_true",
        help="redirect requests forwarded as plain http to https",
    )
    parser.add_argument("--symlinks", choices=SYMLINK_POLICIES, default="reject")
    parser.add_argument("--index-fallback", choices=INDEX_FALLBACKS, default="any")
    parser.add_argument("--log-format", choices=LOG_FORMATS, default=LOG_FORMAT)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=LOG_LEVEL,
    )
    parser.add_argument("--workers", type=int, default=WORKER_COUNT)
    parser.add_argument("--queue-size", type=int, default=REQUEST_QUEUE_SIZE)
    return parser


def parse_config(argv: Sequence[str] | None = None) -> tuple[ServerConfig, str]:
    """Parse command-line arguments into a validated config and a log level."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = ServerConfig(
        root_dir=args.dir,
        address=args.address,
        port=args.port,
        redirect_http=args.redirect_http,
        symlink_policy=args.symlinks,
        index_fallback=args.index_fallback,
        log_format=args.log_format,
        worker_count=args.workers,
        request_queue_size=args.queue_size,
    )
    try:
        config.validate()
    except ValueError as exc:
        parser.error(str(exc))
    return config, args.log_level


def main(argv: Sequence[str] | None = None) -> int:
    config, log_level = parse_config(argv)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        server = HTTPServer.from_config(config)
    except PreloadError as exc:
        logger.error("Unable to preload %s: %s", config.root_dir, exc)
        return 1

    signal.signal(signal.SIGTERM, lambda _signum, _frame: server.stop())
    try:
        server.start()
    except KeyboardInterrupt:
        server.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

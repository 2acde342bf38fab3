"""Configuration constants and runtime settings for the static content server."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

HOST: str = "127.0.0.1"
PORT: int = 3000
READ_CHUNK_SIZE: int = 65_536
SOCKET_TIMEOUT_SECS: int = 5
KEEPALIVE_TIMEOUT_SECS: int = 5
MAX_KEEPALIVE_REQUESTS: int = 100
DRAIN_TIMEOUT_SECS: float = 5.0
WORKER_COUNT: int = 8
REQUEST_QUEUE_SIZE: int = 64
LISTEN_BACKLOG: int = 128
MAX_REQUEST_BYTES: int = 1_048_576
MAX_HEADER_BYTES: int = 16_384
MAX_BODY_BYTES: int = 524_288
MAX_TARGET_LENGTH: int = 8_192
SERVER_NAME: str = "httpserve/0.1"
LOG_FORMAT: str = "plain"
LOG_LEVEL: str = "INFO"
FORWARDED_PROTO_HEADER: str = "x-forwarded-proto"

SYMLINK_POLICIES: tuple[str, ...] = ("reject", "skip", "follow")
INDEX_FALLBACKS: tuple[str, ...] = ("any", "root")
LOG_FORMATS: tuple[str, ...] = ("plain", "json")


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Immutable settings built once from the command line."""

    root_dir: str
    address: str = HOST
    port: int = PORT
    redirect_http: bool = False
    symlink_policy: str = "reject"
    index_fallback: str = "any"
    log_format: str = LOG_FORMAT
    worker_count: int = WORKER_COUNT
    request_queue_size: int = REQUEST_QUEUE_SIZE
    keepalive_timeout_secs: int = KEEPALIVE_TIMEOUT_SECS
    drain_timeout_secs: float = DRAIN_TIMEOUT_SECS

    def validate(self) -> None:
        try:
            ipaddress.ip_address(self.address)
        except ValueError as exc:
            raise ValueError(f"address must be an IP literal: {self.address!r}") from exc
        if not 0 <= self.port <= 65_535:
            raise ValueError(f"port out of range: {self.port}")
        if self.symlink_policy not in SYMLINK_POLICIES:
            raise ValueError(f"Unsupported symlink policy: {self.symlink_policy}")
        if self.index_fallback not in INDEX_FALLBACKS:
            raise ValueError(f"Unsupported index fallback: {self.index_fallback}")
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"Unsupported log format: {self.log_format}")
        if self.worker_count <= 0:
            raise ValueError("worker_count must be positive")
        if self.request_queue_size <= 0:
            raise ValueError("request_queue_size must be positive")
        if self.keepalive_timeout_secs <= 0:
            raise ValueError("keepalive_timeout_secs must be positive")
        if self.drain_timeout_secs < 0:
            raise ValueError("drain_timeout_secs cannot be negative")

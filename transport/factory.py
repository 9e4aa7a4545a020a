"""
Transport Factory — instantiates the configured transport.

    transport:
      backend: "noop" | "smtp" | "http"
"""
from __future__ import annotations

import structlog

from config.settings import TransportConfig
from transport.base import NoopTransport, Transport

logger = structlog.get_logger()

TRANSPORT_BACKENDS = ("noop", "smtp", "http")


def create_transport(config: TransportConfig = None) -> Transport:
    config = config or TransportConfig()
    backend = config.backend

    if backend == "smtp":
        from transport.smtp import SmtpTransport
        transport = SmtpTransport(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            start_tls=config.smtp_start_tls,
            from_email=config.from_email,
            from_name=config.from_name,
        )
    elif backend == "http":
        from transport.http import HttpTransport
        transport = HttpTransport(
            url=config.http_url,
            token=config.http_token,
            from_email=config.from_email,
            from_name=config.from_name,
        )
    elif backend == "noop":
        transport = NoopTransport()
    else:
        from job_queue.errors import ConfigurationError
        raise ConfigurationError(
            f"Unknown transport backend {backend!r}; expected one of {', '.join(TRANSPORT_BACKENDS)}"
        )

    logger.info("transport_created", backend=backend)
    return transport

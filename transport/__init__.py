"""Outbound transports for notification delivery."""
from transport.base import Transport, TransportError, NoopTransport
from transport.factory import create_transport

__all__ = ["Transport", "TransportError", "NoopTransport", "create_transport"]

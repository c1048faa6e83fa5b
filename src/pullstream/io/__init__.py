"""Transport layer for pullstream - turns a URL into a readable byte channel."""

# Re-export these for import convenience
from .base import TransportBackend, DEFAULT_READ_QUANTUM, READ_TIMEOUT, CLOSE_TIMEOUT
from .event_driven import EventDrivenBackend
from .negotiated import NegotiatedUpgradeBackend, SessionConfig, UpgradeSession
from ..core.model import BackendKind


def open_backend(kind, *, loop_thread=None, validate_certificates=True,
                 read_timeout=READ_TIMEOUT, session_config=None):
    """Factory function to create the TransportBackend for a backend kind."""
    kind = BackendKind(kind)
    if kind is BackendKind.EVENT_DRIVEN:
        if loop_thread is None:
            raise ValueError("The event-driven backend needs an event loop thread")
        return EventDrivenBackend(loop_thread, validate_certificates=validate_certificates)
    return NegotiatedUpgradeBackend(read_timeout=read_timeout, session_config=session_config)

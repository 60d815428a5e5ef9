"""Call Signaling service: instant-call matching and call-state signaling."""

__version__ = "0.1.0"

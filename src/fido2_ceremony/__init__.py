"""Server-side WebAuthn ceremony engine."""

__version__ = "0.1.0"

"""agent-browser: drive a per-session browser daemon from the command line."""

__version__ = "0.1.0"

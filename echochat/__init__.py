"""echochat - a multi-provider AI chat client with tool use."""

__version__ = "0.1.0"

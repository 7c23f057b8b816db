"""File manager backend: one command endpoint over pluggable storages."""

__version__ = "0.1.0"

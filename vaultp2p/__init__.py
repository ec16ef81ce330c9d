"""End-to-end encrypted peer-to-peer file exchange engine."""

__version__ = "0.3.0"

"""Fault-tolerant batch job distribution over a shared broker."""

__version__ = "0.1.0"

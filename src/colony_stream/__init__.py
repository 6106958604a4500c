"""Streaming channel protocol for ColonyOS-style process executors."""

__version__ = "0.1.0"

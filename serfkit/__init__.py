"""Lamport clocks, msgpack wire messages, events and filtered queries for gossip clusters."""

__version__ = "0.1.0"

__all__ = [
    "event",
    "lamport",
    "messages",
    "query",
]
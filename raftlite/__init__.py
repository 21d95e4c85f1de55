"""Building blocks for Raft consensus: log types, stores, snapshots, commit tracking, peer stores and transports."""

__version__ = "0.1.0"
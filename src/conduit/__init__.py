"""
Conduit: a local telemetry collector.

Receives trace, metric and log envelopes, batches them per signal kind and
fans every batch out to independently retried sinks.
"""

__version__ = "0.1.0"

"""Agent Bridge.

A local coordination layer letting independent agent processes exchange
messages, task contracts, resource locks and progress events through a
minimal HTTP broker with a Server-Sent-Event stream.
"""

__version__ = "0.1.0"

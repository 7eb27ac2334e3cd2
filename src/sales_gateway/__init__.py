"""
Sales Gateway - messaging sessions and delivery orchestration.

Keeps per-tenant messaging connections alive, turns bursts of inbound
messages into single conversational turns, and delivers replies back
at a human pace.
"""

__version__ = "0.3.0"

"""
Multi-source aircraft and vessel tracking.

Provider ingesters -> raw channel -> fusion -> dedup -> storage gate ->
{current cache, durable history} and geo fan-out notification.
"""

__version__ = "0.1.0"

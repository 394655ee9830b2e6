"""
Fleet Monitor.

Live operational view of a fleet of proxy nodes. The package keeps a client-side
dashboard snapshot consistent by combining periodic REST snapshots, a push
channel of partial deltas, and a deduplicating cache for per-node health history.
"""

__version__ = "0.1.0"

"""Warden - lifecycle and health supervisor for agent fleets.

Keeps patrol agents alive, executes agent-requested restarts exactly once,
and nudges convoys to close when their tracked work finishes.
"""

__version__ = "0.1.0"

"""zKillboard kill-feed to Discord bridge."""

__version__ = "0.1.0"

"""Replica computation, reconciliation and webhook-driven scale-up for self-hosted CI runner fleets."""

__version__ = "0.1.0"
"""Table definitions for the electric balance store."""

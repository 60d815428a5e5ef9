"""Signaling, ranking and call-flow services."""

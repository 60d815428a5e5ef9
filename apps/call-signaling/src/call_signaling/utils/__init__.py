"""Utility modules for the Call Signaling service."""

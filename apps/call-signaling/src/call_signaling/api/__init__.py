"""API package for the Call Signaling service."""

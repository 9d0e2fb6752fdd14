"""Heartline realtime chat backend."""

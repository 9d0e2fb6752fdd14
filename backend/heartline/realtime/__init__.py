"""Realtime connection fabric."""

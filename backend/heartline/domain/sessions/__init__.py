"""Session tracking and cluster presence."""

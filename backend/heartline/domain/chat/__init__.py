"""Chat persistence, validation and message processing."""

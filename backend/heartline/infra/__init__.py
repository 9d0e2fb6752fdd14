"""Infrastructure adapters (redis, postgres, pub/sub, auth)."""

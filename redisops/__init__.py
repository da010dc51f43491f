"""pyinfra operations for Redis Sentinel instances."""

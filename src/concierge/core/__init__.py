"""Core infrastructure: logging, telemetry and the key-value state store."""

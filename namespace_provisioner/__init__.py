"""Self-service namespace provisioning service."""

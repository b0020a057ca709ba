"""Core services: providers, sync cache, search."""

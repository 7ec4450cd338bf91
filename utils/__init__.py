"""Configuration, logging, SQLite and rate limiting helpers for the Face Authentication Server."""

"""Shared models and helpers used across the learnflow packages."""

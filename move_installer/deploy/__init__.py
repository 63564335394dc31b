"""Deployment operations and the single-flight operation queue."""

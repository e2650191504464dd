"""Durable, resumable, signal-driven VM conversion jobs."""

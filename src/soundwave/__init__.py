"""Realtime building blocks for the Soundwave backend."""

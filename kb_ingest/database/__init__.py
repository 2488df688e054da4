"""Persistence for the local buffering queue."""

"""Notesync - offline-first hierarchical notes with background sync."""

__version__ = "0.1.0"

"""Feeder Sync: poll-based synchronization service for feeder devices."""

"""Belief-state types and the adapter that feeds them to the engines."""

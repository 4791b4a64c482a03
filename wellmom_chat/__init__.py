"""Conversation and message synchronization for the WellMom chat."""

__version__ = "1.0.0"

"""Conversation-driven configuration of a source -> transform -> destination data flow."""

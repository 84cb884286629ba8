"""Shared configuration for the relay."""

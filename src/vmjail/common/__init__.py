"""Shared configuration, models, and host primitives."""

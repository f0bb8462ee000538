"""Firecracker microVM lifecycle orchestration inside the jailer."""

__version__ = "0.1.0"

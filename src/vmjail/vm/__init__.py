"""MicroVM configuration, jail layout, process control, and lifecycle."""

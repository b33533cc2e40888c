"""Execution engine, runtime state and trace recording."""

"""Typed tool actions and the simulate/live dispatchers that run them."""

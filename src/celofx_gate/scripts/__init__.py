"""Operator and integrator command-line tools."""

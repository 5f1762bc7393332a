"""Operator CLI for the schema compatibility layer."""

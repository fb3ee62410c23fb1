"""Workflow engine — status graph, customer permissions, transition executor."""

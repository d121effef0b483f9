"""
Backend package for Freelancer OS.

This package provides a FastAPI application over a path-addressed document
store with live subscriptions, so every feature (clients, projects, tasks,
finances, goals, resources, invoices) reads and writes a per-user namespace
through the same collection sync contract.
"""

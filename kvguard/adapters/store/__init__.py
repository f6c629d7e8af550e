"""Shared store adapters.

This package provides the abstraction both coordination primitives are built
on, with a Redis implementation for deployments and an in-memory one for
tests and single-process runs.
"""

"""
Domain layer for the order reconciliation pipeline.

This layer contains business entities, value objects, and domain logic
following Domain-Driven Design principles.
"""

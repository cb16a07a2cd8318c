"""
Approval kernel domain layer: pure value objects and transition functions.

Nothing in this package performs I/O.
"""

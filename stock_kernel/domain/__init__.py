"""
Domain layer -- pure value objects and pure functions.

Nothing in this package performs I/O or imports from ``db/``,
``models/``, ``services/``, ``selectors/`` or ``api/``.
"""

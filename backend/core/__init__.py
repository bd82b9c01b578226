"""Core mathematics and error types for the cricket pool engine.

This package contains pure building blocks:

- ``odds_math``: pari-mutuel pricing, payout rounding, display formatting
- ``errors``   : typed failures shared by services and the API layer

Nothing in this package imports from ``backend.services`` or ``backend.models``.
All modules are side-effect-free and unit-testable in isolation.
"""

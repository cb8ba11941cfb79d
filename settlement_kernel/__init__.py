"""
Settlement Kernel

Shared foundation for the coach settlement engine:
- Structured JSON logging with run-scoped context
- Typed exception taxonomy with machine-readable codes
- Injectable clock
- Integer minor-unit money helpers
- SQLAlchemy base classes and session management
"""

__version__ = "0.1.0"

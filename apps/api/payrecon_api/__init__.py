"""payrecon API - payment confirmation reconciler service."""

__version__ = "1.0.0"

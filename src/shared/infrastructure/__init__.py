"""
Infrastructure Layer
=====================

Low-level technical concerns shared across the service:
- Structured logging setup
"""

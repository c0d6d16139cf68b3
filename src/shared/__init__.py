"""
Shared Kernel Module
====================

Cross-cutting infrastructure used by every part of the service: structured
logging and HTTP middleware.
"""

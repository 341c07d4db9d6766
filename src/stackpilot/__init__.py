"""
Stackpilot - container stack deployment orchestration.

Detects a working container engine and compose driver, renders a
digest-pinned stack descriptor, brings the stack up under a retry deadline
and waits for its services to become healthy.
"""

__version__ = "1.0.0"

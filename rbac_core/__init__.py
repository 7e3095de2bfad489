"""
RBAC Core

Permission evaluation, role assignment and audit logging.
"""
__version__ = "1.0.0"

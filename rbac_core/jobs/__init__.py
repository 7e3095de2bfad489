"""
Jobs Package

Background maintenance jobs for the RBAC core.
"""
from rbac_core.jobs.audit_retention import AuditRetentionJob, run_audit_retention_sweep

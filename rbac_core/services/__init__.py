# Services layer for the RBAC core

from maestro.state.audit import AuditTrail, AuditWriteFault
from maestro.state.store import JsonStore, StoreConflictError, StoreError

__all__ = ["AuditTrail", "AuditWriteFault", "JsonStore", "StoreConflictError", "StoreError"]

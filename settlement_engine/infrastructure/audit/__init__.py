"""
Audit trail for settlement actions (who moved money, when, and why).
"""

from settlement_engine.infrastructure.audit.audit_logger import AuditLogger, audit_logger

__all__ = ["AuditLogger", "audit_logger"]

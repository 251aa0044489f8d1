"""
Audit logging for security events.
Logs rejected socket handshakes, authorization denials on rooms and threads,
and connection-limit violations for compliance and forensics.
"""
import logging
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Types of security audit events."""
    # Handshake events
    HANDSHAKE_ACCEPTED = "handshake_accepted"
    HANDSHAKE_REJECTED = "handshake_rejected"
    CONNECTION_LIMIT_EXCEEDED = "connection_limit_exceeded"

    # Authorization events
    AUTHZ_DENIED = "authorization_denied"

    # Security violations
    INVALID_TOKEN = "invalid_token"
    SUSPENDED_ACCOUNT = "suspended_account"


class AuditLogger:
    """
    Security audit logger.

    All audit events are logged with:
    - Timestamp (ISO 8601)
    - Event type
    - User identifier (when known)
    - Source IP address
    - Additional context metadata
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> None:
        """
        Log a security audit event.

        Args:
            event_type: Type of security event
            user_id: User identifier (if available)
            ip_address: Source IP address
            success: Whether the operation succeeded
            metadata: Additional context (e.g., room, action)
            error_message: Error message for failed operations
        """
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "ip_address": ip_address,
            "metadata": metadata or {},
            "error_message": error_message
        }

        log_level = logging.INFO if success else logging.WARNING
        if event_type in [AuditEventType.INVALID_TOKEN, AuditEventType.SUSPENDED_ACCOUNT]:
            log_level = logging.ERROR

        logger.log(
            log_level,
            f"AUDIT: {event_type.value} | user={user_id} | ip={ip_address} | "
            f"success={success} | {json.dumps(audit_entry, default=str)}"
        )

    @staticmethod
    def log_handshake_rejected(ip_address: Optional[str], reason: str, user_id: Optional[int] = None) -> None:
        """Log a socket handshake that was refused."""
        event_type = AuditEventType.HANDSHAKE_REJECTED
        if reason == "invalid token":
            event_type = AuditEventType.INVALID_TOKEN
        AuditLogger.log_event(
            event_type=event_type,
            user_id=user_id,
            ip_address=ip_address,
            success=False,
            error_message=reason
        )

    @staticmethod
    def log_connection_limit(user_id: int, ip_address: Optional[str], limit: int) -> None:
        """Log a connection refused because the user already holds too many sockets."""
        AuditLogger.log_event(
            event_type=AuditEventType.CONNECTION_LIMIT_EXCEEDED,
            user_id=user_id,
            ip_address=ip_address,
            success=False,
            metadata={"limit": limit},
            error_message=f"Connection limit reached ({limit})"
        )

    @staticmethod
    def log_authorization_denied(
        user_id: int,
        resource: str,
        action: str,
        reason: str
    ) -> None:
        """Log authorization denial."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            success=False,
            metadata={"resource": resource, "action": action},
            error_message=reason
        )


# Global audit logger instance
audit_logger = AuditLogger()

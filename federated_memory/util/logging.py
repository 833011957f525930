"""
Structured operation logging shared by the embedding, module and index layers.
"""

import logging
import os
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for embedding, storage, index and maintenance operations."""

    def __init__(self, name: str = "federated_memory"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def set_level(self, level: str) -> None:
        self.logger.setLevel(level.upper())

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_embedding_operation(self, operation: str, provider: str, count: int = 1, status: str = "success", details: Dict[str, Any] = None):
        """Log an embedding generation call."""
        log_details = {"provider": provider, "count": count}
        if details:
            log_details.update(details)

        level = logging.INFO if status == "success" else logging.ERROR
        self.log_operation(f"embedding.{operation}", status, log_details, level)

    def log_cache_event(self, event: str, key: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a cache hit/miss/failure. Hits and misses are debug noise, failures are warnings."""
        log_details = {"key": key}
        if details:
            log_details.update(details)

        level = logging.DEBUG if status == "success" else logging.WARNING
        self.log_operation(f"cache.{event}", status, log_details, level)

    def log_module_operation(self, module_id: str, operation: str, owner_id: str, record_id: str = None,
                             status: str = "success", details: Dict[str, Any] = None):
        """Log a module storage operation."""
        log_details = {"module": module_id, "owner_id": owner_id}
        if record_id is not None:
            log_details["record_id"] = record_id
        if details:
            log_details.update(sanitize_payload(details))

        level = logging.INFO if status == "success" else logging.ERROR
        self.log_operation(f"module.{operation}", status, log_details, level)

    def log_index_operation(self, operation: str, owner_id: str, module_id: str = None, remote_memory_id: str = None,
                            status: str = "success", details: Dict[str, Any] = None):
        """Log a central index operation."""
        log_details = {"owner_id": owner_id}
        if module_id is not None:
            log_details["module"] = module_id
        if remote_memory_id is not None:
            log_details["remote_memory_id"] = remote_memory_id
        if details:
            log_details.update(details)

        if status in ("success", "dropped"):
            level = logging.INFO if status == "success" else logging.WARNING
        else:
            level = logging.ERROR
        self.log_operation(f"index.{operation}", status, log_details, level)

    def log_maintenance_task(self, task_name: str, start_time: float, end_time: float, status: str = "success",
                             details: Dict[str, Any] = None):
        """Log maintenance task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Maintenance task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Maintenance task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"maintenance.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'embedding', 'compact_embedding', 'notes', 'secret', 'password']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        if len(payload) > 20:
            return f"[{len(payload)} items]"
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None):
    """General audit event logging with content redaction."""
    log_details = identifiers.copy() if identifiers else {}
    if payload:
        log_details["payload"] = sanitize_payload(payload)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)

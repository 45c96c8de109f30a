"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version, service, trace_id, resource_id (inside workflows)
- event: Event type (state_changed, workflow_failed, ...)

High cardinality fields (OK in logs, NOT in metric labels):
- resource_id, project_id, instance, subdomain
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types for the ``event`` extra field."""

    # Resource lifecycle
    RESOURCE_CREATED = "resource_created"
    RESOURCE_DELETED = "resource_deleted"
    STATE_CHANGED = "state_changed"
    RESIZE_APPLIED = "resize_applied"
    RESIZE_DEFERRED = "resize_deferred"

    # Workflows
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_STEP = "workflow_step"
    WORKFLOW_SUCCEEDED = "workflow_succeeded"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_TIMEOUT = "workflow_timeout"
    DEPLOY_SKIPPED = "deploy_skipped"

    # Driver / substrate
    DRIVER_CONNECTED = "driver_connected"
    DRIVER_UNAVAILABLE = "driver_unavailable"
    INSTANCE_CREATED = "instance_created"
    INSTANCE_STARTED = "instance_started"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_REMOVED = "instance_removed"
    IMAGE_PULLED = "image_pulled"
    SNAPSHOT_CREATED = "snapshot_created"
    CLEANUP_FAILED = "cleanup_failed"
    COMMAND_FAILED = "command_failed"

    # SSH
    SSH_CONNECTED = "ssh_connected"
    SSH_DISCONNECTED = "ssh_disconnected"

    # Backups
    BACKUP_READY = "backup_ready"
    BACKUP_FAILED = "backup_failed"
    RESTORE_COMPLETE = "restore_complete"
    RESTORE_FAILED = "restore_failed"

    # TLS
    TLS_REGISTERED = "tls_registered"
    TLS_FAILED = "tls_failed"

    # Edge proxy / terminal
    UPSTREAM_ERROR = "upstream_error"
    WS_ERROR = "ws_error"
    TERMINAL_ATTACHED = "terminal_attached"
    TERMINAL_DETACHED = "terminal_detached"
    TERMINAL_REJECTED = "terminal_rejected"

    # App lifecycle / API
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"
    DB_CONNECTED = "db_connected"
    DB_ERROR = "db_error"
    REQUEST_COMPLETE = "request_complete"
    REQUEST_FAILED = "request_failed"
    REQUEST_SLOW = "request_slow"


class ErrorClass(StrEnum):
    """Error classification for the ``error_class`` extra field."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"


"""
ORM-level immutability enforcement for reconciliation records.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
Listeners registered here intercept those events and abort the flush:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

Protected entities:

Entity              | When Immutable                 | Operations blocked
--------------------|--------------------------------|--------------------
AuditEvent          | ALWAYS (from creation)         | UPDATE, DELETE
ReconciliationRun   | After status = signed_off      | UPDATE, DELETE
Match               | ALWAYS                         | DELETE
Discrepancy         | ALWAYS                         | DELETE

The sign-off transition itself (ready -> signed_off) is allowed; the check
looks at the attribute history to tell "becoming signed off" apart from
"already signed off".

Usage:

    from recon_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from recon_kernel.exceptions import ImmutabilityViolationError
from recon_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_SIGNED_OFF = "signed_off"


def _block(entity_type: str, entity_id: str, operation: str, reason: str, **extra):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            **extra,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
    )


def _check_audit_event_immutability(mapper, connection, target):
    """Prevent any updates to AuditEvent records."""
    _block(
        "AuditEvent",
        str(target.id),
        "UPDATE",
        "Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    """Prevent deletion of AuditEvent records."""
    _block(
        "AuditEvent",
        str(target.id),
        "DELETE",
        "Audit events are immutable and cannot be deleted",
    )


def _was_signed_off(target) -> bool:
    # history.deleted holds the value loaded from the database when the
    # status is changing; otherwise the current value is the stored one.
    status_history = get_history(target, "signoff_status")
    if status_history.deleted:
        return status_history.deleted[0] == _SIGNED_OFF
    if not status_history.added:
        return target.signoff_status == _SIGNED_OFF
    return False


def _check_run_immutability(mapper, connection, target):
    """Block every field change on a run that was already signed off."""
    if not _was_signed_off(target):
        return

    for attr in inspect(target).attrs:
        if attr.history.has_changes():
            _block(
                "ReconciliationRun",
                str(target.id),
                "UPDATE",
                f"Cannot modify field '{attr.key}' on a signed-off run",
                field=attr.key,
            )


def _check_run_delete(mapper, connection, target):
    _block(
        "ReconciliationRun",
        str(target.id),
        "DELETE",
        "Reconciliation runs cannot be deleted",
    )


def _check_match_delete(mapper, connection, target):
    _block(
        "Match",
        str(target.id),
        "DELETE",
        "Matches are never deleted; reject them instead",
    )


def _check_discrepancy_delete(mapper, connection, target):
    _block(
        "Discrepancy",
        str(target.id),
        "DELETE",
        "Discrepancies are never deleted; resolve or waive them instead",
    )


def _listeners():
    from recon_kernel.models import (
        AuditEventModel,
        DiscrepancyModel,
        MatchModel,
        ReconciliationRunModel,
    )

    return (
        (AuditEventModel, "before_update", _check_audit_event_immutability),
        (AuditEventModel, "before_delete", _check_audit_event_delete),
        (ReconciliationRunModel, "before_update", _check_run_immutability),
        (ReconciliationRunModel, "before_delete", _check_run_delete),
        (MatchModel, "before_delete", _check_match_delete),
        (DiscrepancyModel, "before_delete", _check_discrepancy_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already registered are left in place.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to violate immutability
    rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)

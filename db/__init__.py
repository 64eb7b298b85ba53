from .db import (
    Base,
    CourtEvent,
    DeliveryLog,
    ReminderInstance,
    ReminderTemplate,
    create_all,
    dispose_engine,
    get_session,
    upsert_court_event,
    get_court_event,
    insert_template,
    list_active_templates,
    get_instance,
    get_instance_by_provider_id,
    list_instances_for_event,
    insert_instances,
    reschedule_pending,
    cancel_event_instances,
    claim_due_instances,
    settle_claim,
    transition_instance,
    list_stale_claims,
    release_stale_claim,
    list_sent_for_reconcile,
    record_instance_error,
    mark_confirmed,
    latest_unconfirmed_for_recipient,
    list_delivery_logs,
    status_counts,
)  # noqa: F401

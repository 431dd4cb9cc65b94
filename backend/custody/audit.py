from .models import DeliveryLog


def resolve_actor(actor):
    if actor is not None and getattr(actor, "is_authenticated", False):
        return actor
    return None


def log_action(action, actor=None, entry=None, metadata=None) -> DeliveryLog:
    return DeliveryLog.objects.create(
        action=action,
        actor=resolve_actor(actor),
        entry=entry,
        metadata=metadata or {},
    )

import logging

from django.db import DatabaseError, transaction

from apps.core.users.models import AuditLog

logger = logging.getLogger(__name__)


def _extract_ip(request):
    forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def log_audit_event(*, action, school=None, user=None, target=None, details='', request=None):
    """Record who did what to which record.

    The acting user is passed explicitly by service callers; `request` is only
    used for the HTTP metadata when one is available.
    """
    target_model = target_id = target_repr = ''
    if target is not None:
        target_model = target.__class__.__name__
        target_id = str(getattr(target, 'pk', ''))
        target_repr = str(target)[:255]

    if user is None and request is not None and request.user.is_authenticated:
        user = request.user

    try:
        # Savepoint so a failed audit write cannot poison the caller's transaction.
        with transaction.atomic():
            return AuditLog.objects.create(
                school=school or getattr(user, 'school', None),
                user=user,
                action=action,
                target_model=target_model,
                target_id=target_id,
                target_repr=target_repr,
                details=details,
                method=request.method if request is not None else '',
                path=request.path[:255] if request is not None else '',
                ip_address=_extract_ip(request) if request is not None else None,
            )
    except DatabaseError:
        logger.exception('Could not write audit event %s for %s:%s', action, target_model, target_id)
        return None

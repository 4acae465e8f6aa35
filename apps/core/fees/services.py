from __future__ import annotations

import logging
import string
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from io import BytesIO

from PIL import Image, ImageDraw
from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F, Q, Sum
from django.utils import timezone
from django.utils.crypto import get_random_string
from django.utils.dateparse import parse_date

from apps.core.academics.models import SchoolClass
from apps.core.students.models import Student
from apps.core.users.audit import log_audit_event
from apps.core.utils.money import ZERO, quantize_amount, to_decimal

from .exceptions import (
    AlreadyCancelledError,
    ConcurrentUpdateError,
    ConflictError,
    DuplicateBillingError,
    ExceedsDueError,
    FeeLedgerError,
    InvalidStateError,
    LedgerValidationError,
    NotFoundError,
    NumberingCollisionError,
    PartiallyAppliedError,
)
from .models import (
    FeeCategory,
    FeeCollection,
    FeePaymentEntry,
    FeeReceipt,
    FeeStructure,
    FeeStructureComponent,
    derive_collection_state,
)

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = 'Cancelled by user'
CANCEL_KEEP_RECEIPTS = 'keep_receipts'
CANCEL_RECEIPTS = 'cancel_receipts'

RECEIPT_SUFFIX_CHARS = string.ascii_uppercase + string.digits

STRUCTURE_EDITABLE_FIELDS = {
    'name',
    'academic_year',
    'school_class',
    'category',
    'amount',
    'components',
    'frequency',
    'due_day',
    'late_fee',
    'discount',
    'description',
    'status',
}
COLLECTION_EDITABLE_FIELDS = {
    'total_amount',
    'discount_amount',
    'late_fee_amount',
    'due_date',
    'remarks',
}
_STATE_FIELDS = (
    'total_amount',
    'discount_amount',
    'late_fee_amount',
    'paid_amount',
    'due_date',
    'status',
)


def get_for_school(model, school, value, label):
    """Fetch ``value`` (instance or primary key) inside the school's records."""
    if value is None or value == '':
        raise LedgerValidationError(f"{label} is required.")

    if isinstance(value, model):
        if value.school_id != school.id:
            raise NotFoundError(f"{label} not found.")
        return value

    try:
        instance = model.objects.for_school(school).filter(pk=value).first()
    except (TypeError, ValueError, ValidationError):
        instance = None
    if instance is None:
        raise NotFoundError(f"{label} not found.")
    return instance


def _amount(value, label='Amount') -> Decimal:
    try:
        return quantize_amount(value)
    except (InvalidOperation, TypeError, ValueError):
        raise LedgerValidationError(f"{label} must be a valid number.") from None


def _positive_amount(value, label='Amount') -> Decimal:
    amount = _amount(value, label)
    if amount <= 0:
        raise LedgerValidationError(f"{label} must be greater than zero.")
    return amount


def parse_date_value(value, label='Date'):
    if value is None or value == '':
        return None
    if isinstance(value, date):
        return value
    parsed = None
    try:
        parsed = parse_date(str(value))
    except ValueError:
        pass
    if parsed is None:
        raise LedgerValidationError(f"{label} must be a valid date (YYYY-MM-DD).")
    return parsed


def _validated(instance, exclude=None):
    try:
        instance.full_clean(exclude=exclude)
    except FeeLedgerError:
        raise
    except ValidationError as exc:
        detail = exc.message_dict if hasattr(exc, 'error_dict') else exc.messages
        raise LedgerValidationError(detail) from exc


# Fee categories and structures

@transaction.atomic
def create_fee_category(*, school, name, description='', created_by=None):
    name = (name or '').strip()
    if not name:
        raise LedgerValidationError('Fee category name is required.')
    if FeeCategory.objects.filter(school=school, name=name).exists():
        raise ConflictError(f"Fee category '{name}' already exists.")

    category = FeeCategory(school=school, name=name, description=(description or '')[:255])
    _validated(category)
    category.save()

    log_audit_event(
        action='fees.category_created',
        school=school,
        user=created_by,
        target=category,
        details=f"Name={category.name}",
    )
    return category


@transaction.atomic
def update_fee_category(*, school, category, changes, updated_by=None):
    unknown = set(changes) - {'name', 'description', 'is_active'}
    if unknown:
        raise LedgerValidationError(f"Unsupported fee category fields: {', '.join(sorted(unknown))}.")

    category = get_for_school(FeeCategory, school, category, 'Fee category')
    if 'name' in changes:
        name = (changes['name'] or '').strip()
        if not name:
            raise LedgerValidationError('Fee category name is required.')
        if name != category.name and FeeCategory.objects.filter(school=school, name=name).exclude(pk=category.pk).exists():
            raise ConflictError(f"Fee category '{name}' already exists.")
        category.name = name
    if 'description' in changes:
        category.description = (changes['description'] or '')[:255]
    if 'is_active' in changes:
        category.is_active = bool(changes['is_active'])

    _validated(category)
    category.save()

    log_audit_event(
        action='fees.category_updated',
        school=school,
        user=updated_by,
        target=category,
        details=f"Fields={', '.join(sorted(changes))}",
    )
    return category


@transaction.atomic
def delete_fee_category(*, school, category, deleted_by=None):
    """Retire a category nothing is billed under. Categories are deactivated, not removed."""
    category = get_for_school(FeeCategory, school, category, 'Fee category')
    usage = FeeStructure.objects.filter(
        Q(category=category) | Q(components__category=category)
    ).distinct().count()
    if usage:
        raise ConflictError(
            f"Cannot delete category. It is being used in {usage} fee structure(s). "
            "Please delete or update those fee structures first."
        )

    category.delete()
    log_audit_event(
        action='fees.category_deleted',
        school=school,
        user=deleted_by,
        target=category,
    )
    logger.info('Deactivated fee category %s', category.pk)
    return category


def _validate_components(school, components):
    rows = []
    for index, component in enumerate(components, start=1):
        if component.get('category') in (None, ''):
            raise LedgerValidationError(f"Component {index}: fee category is required.")
        amount = _positive_amount(component.get('amount'), f"Component {index} amount")
        category = get_for_school(FeeCategory, school, component['category'], 'Fee category')
        label = (component.get('label') or category.name).strip()[:100]
        rows.append({'category': category, 'label': label, 'amount': amount})
    return rows


def _policy_fields(late_fee=None, discount=None, current=None):
    """Model fields for the late fee and discount policies.

    Keys missing from a policy dict keep ``current``'s value when updating an
    existing structure and fall back to the model defaults otherwise.
    """
    def existing(field, default):
        return getattr(current, field) if current is not None else default

    fields = {}
    try:
        if late_fee is not None:
            fields['late_fee_enabled'] = bool(late_fee.get('enabled', existing('late_fee_enabled', False)))
            fields['late_fee_type'] = late_fee.get('type') or existing('late_fee_type', FeeStructure.TYPE_FIXED)
            fields['late_fee_value'] = _amount(late_fee.get('value', existing('late_fee_value', ZERO)), 'Late fee')
            fields['late_fee_grace_days'] = int(
                late_fee.get('grace_days', existing('late_fee_grace_days', 0)) or 0
            )
        if discount is not None:
            fields['discount_enabled'] = bool(discount.get('enabled', existing('discount_enabled', False)))
            fields['discount_type'] = discount.get('type') or existing('discount_type', FeeStructure.TYPE_FIXED)
            fields['discount_value'] = _amount(discount.get('value', existing('discount_value', ZERO)), 'Discount')
            fields['discount_description'] = (
                discount.get('description', existing('discount_description', '')) or ''
            )[:255]
    except (TypeError, ValueError):
        raise LedgerValidationError('Invalid late fee or discount policy.') from None

    if fields.get('late_fee_grace_days', 0) < 0:
        raise LedgerValidationError('Late fee grace period cannot be negative.')
    return fields


def _ensure_structure_name_available(*, school, name, school_class, academic_year, exclude_pk=None):
    clashes = FeeStructure.objects.filter(
        school=school,
        name=name,
        school_class=school_class,
        academic_year=academic_year,
    )
    if exclude_pk:
        clashes = clashes.exclude(pk=exclude_pk)
    if clashes.exists():
        scope = school_class.name if school_class else 'all classes'
        raise ConflictError(f"Fee structure '{name}' already exists for {scope} in {academic_year}.")


def _save_structure(structure):
    try:
        with transaction.atomic():
            structure.save()
    except IntegrityError as exc:
        raise ConflictError(f"Fee structure '{structure.name}' already exists for this class and year.") from exc


@transaction.atomic
def create_fee_structure(
    *,
    school,
    name,
    academic_year,
    created_by=None,
    amount=None,
    category=None,
    components=None,
    school_class=None,
    frequency=FeeStructure.FREQUENCY_MONTHLY,
    due_day=1,
    late_fee=None,
    discount=None,
    description='',
    status=FeeStructure.STATUS_ACTIVE,
):
    name = (name or '').strip()
    academic_year = (academic_year or '').strip()
    if not name:
        raise LedgerValidationError('Fee structure name is required.')
    if not academic_year:
        raise LedgerValidationError('Academic year is required.')

    if school_class is not None:
        school_class = get_for_school(SchoolClass, school, school_class, 'Class')
    if category is not None:
        category = get_for_school(FeeCategory, school, category, 'Fee category')

    component_rows = _validate_components(school, components) if components else []
    if component_rows:
        # Itemised structures ignore any flat amount that was also supplied.
        total_amount = sum((row['amount'] for row in component_rows), ZERO)
    else:
        if category is None:
            raise LedgerValidationError('Provide either fee components or a flat amount with a fee category.')
        total_amount = _positive_amount(amount)

    _ensure_structure_name_available(
        school=school,
        name=name,
        school_class=school_class,
        academic_year=academic_year,
    )

    structure = FeeStructure(
        school=school,
        name=name,
        category=category,
        school_class=school_class,
        academic_year=academic_year,
        amount=total_amount,
        total_amount=total_amount,
        frequency=frequency,
        due_day=due_day,
        description=(description or '')[:500],
        status=status,
        created_by=created_by,
        **_policy_fields(late_fee, discount),
    )
    _validated(structure)
    _save_structure(structure)

    FeeStructureComponent.objects.bulk_create(
        [FeeStructureComponent(fee_structure=structure, **row) for row in component_rows]
    )

    log_audit_event(
        action='fees.structure_created',
        school=school,
        user=created_by,
        target=structure,
        details=f"Name={structure.name}; Year={structure.academic_year}; Total={structure.total_amount}",
    )
    logger.info('Created fee structure %s (%s) for school %s', structure.pk, structure.name, school.pk)
    return structure


@transaction.atomic
def update_fee_structure(*, school, structure, changes, updated_by=None):
    unknown = set(changes) - STRUCTURE_EDITABLE_FIELDS
    if unknown:
        raise LedgerValidationError(f"Unsupported fee structure fields: {', '.join(sorted(unknown))}.")

    structure = get_for_school(FeeStructure, school, structure, 'Fee structure')
    structure = FeeStructure.objects.select_for_update().get(pk=structure.pk)

    if 'name' in changes:
        structure.name = (changes['name'] or '').strip()
        if not structure.name:
            raise LedgerValidationError('Fee structure name is required.')
    if 'academic_year' in changes:
        structure.academic_year = (changes['academic_year'] or '').strip()
        if not structure.academic_year:
            raise LedgerValidationError('Academic year is required.')
    if 'school_class' in changes:
        value = changes['school_class']
        structure.school_class = get_for_school(SchoolClass, school, value, 'Class') if value else None
    if 'category' in changes:
        value = changes['category']
        structure.category = get_for_school(FeeCategory, school, value, 'Fee category') if value else None

    for field in ('frequency', 'due_day', 'status'):
        if field in changes:
            setattr(structure, field, changes[field])
    if 'description' in changes:
        structure.description = (changes['description'] or '')[:500]

    for field, value in _policy_fields(changes.get('late_fee'), changes.get('discount'), current=structure).items():
        setattr(structure, field, value)

    component_rows = None
    if 'components' in changes:
        component_rows = _validate_components(school, changes['components'] or [])
        if component_rows:
            total_amount = sum((row['amount'] for row in component_rows), ZERO)
        else:
            if structure.category_id is None:
                raise LedgerValidationError('A flat-amount fee structure needs a fee category.')
            total_amount = _positive_amount(changes.get('amount', structure.amount))
        structure.amount = total_amount
        structure.total_amount = total_amount
    elif 'amount' in changes:
        if structure.components.exists():
            raise LedgerValidationError('Amount is the sum of the fee components. Update the components instead.')
        structure.amount = _positive_amount(changes['amount'])
        structure.total_amount = structure.amount

    _ensure_structure_name_available(
        school=school,
        name=structure.name,
        school_class=structure.school_class,
        academic_year=structure.academic_year,
        exclude_pk=structure.pk,
    )
    _validated(structure)
    _save_structure(structure)

    if component_rows is not None:
        structure.components.all().delete()
        FeeStructureComponent.objects.bulk_create(
            [FeeStructureComponent(fee_structure=structure, **row) for row in component_rows]
        )

    log_audit_event(
        action='fees.structure_updated',
        school=school,
        user=updated_by,
        target=structure,
        details=f"Fields={', '.join(sorted(changes))}; Total={structure.total_amount}",
    )
    logger.info('Updated fee structure %s fields=%s', structure.pk, sorted(changes))
    return structure


@transaction.atomic
def deactivate_fee_structure(*, school, structure, updated_by=None):
    structure = get_for_school(FeeStructure, school, structure, 'Fee structure')
    if structure.status != FeeStructure.STATUS_INACTIVE:
        structure.status = FeeStructure.STATUS_INACTIVE
        structure.save(update_fields=['status', 'updated_at'])
        log_audit_event(
            action='fees.structure_deactivated',
            school=school,
            user=updated_by,
            target=structure,
        )
        logger.info('Deactivated fee structure %s', structure.pk)
    return structure


@transaction.atomic
def delete_fee_structure(*, school, structure, deleted_by=None):
    structure = get_for_school(FeeStructure, school, structure, 'Fee structure')
    log_audit_event(
        action='fees.structure_deleted',
        school=school,
        user=deleted_by,
        target=structure,
        details=f"Name={structure.name}; Year={structure.academic_year}",
    )
    structure_id = structure.pk
    structure.delete()
    logger.info('Deleted fee structure %s', structure_id)


# Fee collections

def _mutate_collection(collection_id, mutate, *, today=None):
    """Apply ``mutate`` to a collection as a versioned conditional update.

    ``mutate`` receives the freshly read row and returns the field changes,
    or ``None`` when nothing needs to change. It is re-run on every retry so
    business rules are always checked against the current figures.
    """
    attempts = max(1, int(settings.FEE_COLLECTION_UPDATE_RETRIES))
    for attempt in range(1, attempts + 1):
        collection = FeeCollection.objects.get(pk=collection_id)
        changes = mutate(collection)
        if not changes:
            return collection

        state = {field: changes.get(field, getattr(collection, field)) for field in _STATE_FIELDS}
        due_amount, status = derive_collection_state(**state, today=today)
        values = {
            **changes,
            'due_amount': due_amount,
            'status': status,
            'version': F('version') + 1,
            'updated_at': timezone.now(),
        }
        updated = FeeCollection.objects.filter(pk=collection_id, version=collection.version).update(**values)
        if updated:
            collection.refresh_from_db()
            return collection

        logger.warning(
            'Fee collection %s changed concurrently (attempt %s/%s); retrying',
            collection_id,
            attempt,
            attempts,
        )

    raise ConcurrentUpdateError(
        f"Fee collection {collection_id} is being updated by another request. Please retry."
    )


def _apply_payment(collection_id, amount):
    def mutate(collection):
        if collection.status == FeeCollection.STATUS_CANCELLED:
            raise InvalidStateError('Payments cannot be applied to a cancelled fee collection.')
        due_amount, _ = collection.derive_state()
        if amount > due_amount:
            raise ExceedsDueError(amount, due_amount)
        return {'paid_amount': quantize_amount(to_decimal(collection.paid_amount) + amount)}

    return _mutate_collection(collection_id, mutate)


def _reverse_payment(collection_id, amount):
    def mutate(collection):
        if collection.status == FeeCollection.STATUS_CANCELLED:
            raise InvalidStateError('Payments cannot be reversed on a cancelled fee collection.')
        paid_amount = quantize_amount(collection.paid_amount)
        if amount > paid_amount:
            raise InvalidStateError(f"Cannot reverse {amount}; only {paid_amount} has been paid.")
        return {'paid_amount': quantize_amount(paid_amount - amount)}

    return _mutate_collection(collection_id, mutate)


@transaction.atomic
def create_fee_collection(
    *,
    school,
    student,
    fee_structure,
    academic_year,
    due_date,
    month='',
    remarks='',
    created_by=None,
):
    student = get_for_school(Student, school, student, 'Student')
    fee_structure = get_for_school(FeeStructure, school, fee_structure, 'Fee structure')

    academic_year = (academic_year or '').strip()
    if not academic_year:
        raise LedgerValidationError('Academic year is required.')
    due_date = parse_date_value(due_date, 'Due date')
    if due_date is None:
        raise LedgerValidationError('Due date is required.')
    month = (month or '').strip()

    if student.is_archived:
        raise InvalidStateError('Cannot bill an archived student.')
    if fee_structure.status != FeeStructure.STATUS_ACTIVE:
        raise InvalidStateError('Fee structure is inactive.')
    if fee_structure.school_class_id and student.current_class_id != fee_structure.school_class_id:
        raise LedgerValidationError('Fee structure does not apply to the student\'s class.')

    billing_key = {
        'school': school,
        'student': student,
        'fee_structure': fee_structure,
        'academic_year': academic_year,
        'month': month,
    }
    duplicate_message = (
        f"A fee collection for {student.admission_number} / {fee_structure.name} "
        f"({academic_year}{' ' + month if month else ''}) already exists."
    )
    if FeeCollection.objects.filter(**billing_key).exclude(status=FeeCollection.STATUS_CANCELLED).exists():
        raise DuplicateBillingError(duplicate_message)

    collection = FeeCollection(
        **billing_key,
        total_amount=quantize_amount(fee_structure.total_amount),
        discount_amount=fee_structure.calculate_discount(),
        late_fee_amount=ZERO,
        paid_amount=ZERO,
        due_date=due_date,
        remarks=remarks or '',
        created_by=created_by,
    )
    try:
        with transaction.atomic():
            collection.save()
    except IntegrityError as exc:
        if FeeCollection.objects.filter(**billing_key).exclude(status=FeeCollection.STATUS_CANCELLED).exists():
            raise DuplicateBillingError(duplicate_message) from exc
        raise

    log_audit_event(
        action='fees.collection_created',
        school=school,
        user=created_by,
        target=collection,
        details=f"Student={student.admission_number}; Structure={fee_structure.name}; Due={collection.due_amount}",
    )
    logger.info(
        'Created fee collection %s for student %s (due %s)',
        collection.pk,
        student.admission_number,
        collection.due_amount,
    )
    return collection


@transaction.atomic
def record_fee_payment(
    *,
    school,
    collection,
    amount,
    payment_method,
    collected_by,
    payment_date=None,
    transaction_id='',
    remarks='',
):
    collection = get_for_school(FeeCollection, school, collection, 'Fee collection')
    amount = _positive_amount(amount, 'Payment amount')
    if payment_method not in dict(FeeReceipt.PAYMENT_METHOD_CHOICES):
        raise LedgerValidationError('Invalid payment method.')

    collection = _apply_payment(collection.pk, amount)
    entry = FeePaymentEntry.adhoc(
        fee_collection=collection,
        amount=amount,
        payment_method=payment_method,
        collected_by=collected_by,
        payment_date=parse_date_value(payment_date, 'Payment date'),
        transaction_id=transaction_id,
        remarks=remarks,
    )
    entry.save()

    log_audit_event(
        action='fees.payment_recorded',
        school=school,
        user=collected_by,
        target=collection,
        details=f"Amount={amount}; Method={payment_method}; Due={collection.due_amount}",
    )
    logger.info('Recorded ad-hoc payment %s on fee collection %s', amount, collection.pk)
    return {
        'collection': collection,
        'entry': entry,
    }


@transaction.atomic
def update_fee_collection(*, school, collection, changes, updated_by=None):
    if 'status' in changes:
        raise LedgerValidationError('Status is derived from the amounts and cannot be set directly.')
    unknown = set(changes) - COLLECTION_EDITABLE_FIELDS
    if unknown:
        raise LedgerValidationError(f"Unsupported fee collection fields: {', '.join(sorted(unknown))}.")

    collection = get_for_school(FeeCollection, school, collection, 'Fee collection')

    cleaned = {}
    for field in ('total_amount', 'discount_amount', 'late_fee_amount'):
        if field in changes:
            value = _amount(changes[field], field.replace('_', ' ').capitalize())
            if value < 0:
                raise LedgerValidationError(f"{field.replace('_', ' ').capitalize()} cannot be negative.")
            cleaned[field] = value
    if 'due_date' in changes:
        cleaned['due_date'] = parse_date_value(changes['due_date'], 'Due date')
        if cleaned['due_date'] is None:
            raise LedgerValidationError('Due date is required.')
    if 'remarks' in changes:
        cleaned['remarks'] = changes['remarks'] or ''

    def mutate(current):
        if current.status == FeeCollection.STATUS_CANCELLED:
            raise InvalidStateError('Cancelled fee collections cannot be edited.')
        total_amount = cleaned.get('total_amount', current.total_amount)
        discount_amount = cleaned.get('discount_amount', current.discount_amount)
        if discount_amount > total_amount:
            raise LedgerValidationError('Discount cannot exceed total amount.')
        return dict(cleaned)

    collection = _mutate_collection(collection.pk, mutate)

    log_audit_event(
        action='fees.collection_updated',
        school=school,
        user=updated_by,
        target=collection,
        details=f"Fields={', '.join(sorted(cleaned))}; Due={collection.due_amount}; Status={collection.status}",
    )
    logger.info('Updated fee collection %s fields=%s', collection.pk, sorted(cleaned))
    return collection


@transaction.atomic
def cancel_fee_collection(*, school, collection, cancelled_by, reason='', cascade_receipts=None):
    """Cancel a collection. Cancellation is terminal.

    Whether active receipts are cancelled (and reversed) first follows
    ``FEE_COLLECTION_CANCELLATION_POLICY`` unless ``cascade_receipts`` is given.
    With the default ``keep_receipts`` policy they stay active and must be
    cancelled explicitly.
    """
    collection = get_for_school(FeeCollection, school, collection, 'Fee collection')
    if collection.status == FeeCollection.STATUS_CANCELLED:
        raise InvalidStateError('Fee collection is already cancelled.')

    reason = (reason or '').strip() or DEFAULT_CANCELLATION_REASON
    if cascade_receipts is None:
        cascade_receipts = settings.FEE_COLLECTION_CANCELLATION_POLICY == CANCEL_RECEIPTS

    cancelled_receipts = []
    if cascade_receipts:
        active_receipts = collection.receipts.filter(status=FeeReceipt.STATUS_ACTIVE).order_by('id')
        for receipt in active_receipts:
            receipt = _mark_receipt_cancelled(receipt, cancelled_by=cancelled_by, reason=reason)
            _reverse_receipt(receipt)
            cancelled_receipts.append(receipt)

    cancelled_at = timezone.now()

    def mutate(current):
        if current.status == FeeCollection.STATUS_CANCELLED:
            raise InvalidStateError('Fee collection is already cancelled.')
        note = f"Cancelled: {reason}"
        return {
            'status': FeeCollection.STATUS_CANCELLED,
            'remarks': f"{current.remarks}\n{note}" if current.remarks else note,
            'cancelled_at': cancelled_at,
            'cancelled_by': cancelled_by,
        }

    collection = _mutate_collection(collection.pk, mutate)

    log_audit_event(
        action='fees.collection_cancelled',
        school=school,
        user=cancelled_by,
        target=collection,
        details=f"Reason={reason}; ReceiptsCancelled={len(cancelled_receipts)}",
    )
    logger.info(
        'Cancelled fee collection %s (%s receipt(s) cancelled with it)',
        collection.pk,
        len(cancelled_receipts),
    )
    return {
        'collection': collection,
        'cancelled_receipts': cancelled_receipts,
    }


@transaction.atomic
def delete_fee_collection(*, school, collection, deleted_by=None):
    collection = get_for_school(FeeCollection, school, collection, 'Fee collection')
    collection = FeeCollection.objects.select_for_update().get(pk=collection.pk)
    log_audit_event(
        action='fees.collection_deleted',
        school=school,
        user=deleted_by,
        target=collection,
        details=f"Student={collection.student_id}; Structure={collection.fee_structure_id}",
    )
    collection_id = collection.pk
    collection.delete()
    logger.info('Deleted fee collection %s', collection_id)


@transaction.atomic
def assess_late_fee(*, school, collection, assessed_by=None, today=None):
    """Recompute a collection's late fee from its structure's policy.

    Idempotent for a given ``today``. Paid and cancelled collections are
    left untouched.
    """
    collection = get_for_school(FeeCollection, school, collection, 'Fee collection')
    today = today or timezone.localdate()
    structure = collection.fee_structure
    late_fee = structure.calculate_late_fee((today - collection.due_date).days)
    applied = []

    def mutate(current):
        if current.status in (FeeCollection.STATUS_PAID, FeeCollection.STATUS_CANCELLED):
            return None
        if quantize_amount(current.late_fee_amount) == late_fee:
            return None
        applied.append(late_fee)
        return {'late_fee_amount': late_fee}

    collection = _mutate_collection(collection.pk, mutate, today=today)
    if applied:
        log_audit_event(
            action='fees.late_fee_assessed',
            school=school,
            user=assessed_by,
            target=collection,
            details=f"LateFee={late_fee}; Due={collection.due_amount}",
        )
        logger.info('Assessed late fee %s on fee collection %s', late_fee, collection.pk)
    return collection


def assess_late_fees(*, school, assessed_by=None, today=None):
    today = today or timezone.localdate()
    candidates = FeeCollection.objects.for_school(school).filter(
        status__in=FeeCollection.OPEN_STATUSES,
        due_date__lt=today,
        fee_structure__late_fee_enabled=True,
    ).values_list('pk', 'late_fee_amount')

    changed = 0
    for collection_id, previous_late_fee in list(candidates):
        collection = assess_late_fee(
            school=school,
            collection=collection_id,
            assessed_by=assessed_by,
            today=today,
        )
        if quantize_amount(collection.late_fee_amount) != quantize_amount(previous_late_fee):
            changed += 1
    return changed


def refresh_overdue_statuses(*, school=None, today=None):
    """Move unpaid pending collections past their due date to overdue."""
    today = today or timezone.localdate()
    stale = FeeCollection.objects.filter(
        status=FeeCollection.STATUS_PENDING,
        due_date__lt=today,
        paid_amount=0,
        due_amount__gt=0,
    )
    if school is not None:
        stale = stale.for_school(school)

    updated = stale.update(
        status=FeeCollection.STATUS_OVERDUE,
        version=F('version') + 1,
        updated_at=timezone.now(),
    )
    if updated:
        logger.info('Marked %s fee collection(s) overdue', updated)
    return updated


# Fee receipts

def _random_receipt_number(prefix, period):
    return f"{prefix}-{period}-{get_random_string(6, allowed_chars=RECEIPT_SUFFIX_CHARS)}"


def generate_receipt_number(*, school, now=None):
    """Next ``PREFIX-YYYYMM-NNNN`` number for the school.

    The sequence is a count of this month's receipts, so concurrent callers
    can compute the same number; the unique constraint on receipts catches
    that and creation retries with a random suffix.
    """
    now = timezone.localtime(now or timezone.now())
    prefix = settings.FEE_RECEIPT_PREFIX
    period = now.strftime('%Y%m')
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    next_month = (month_start + timedelta(days=32)).replace(day=1)

    try:
        with transaction.atomic():
            issued = FeeReceipt.objects.filter(
                school=school,
                created_at__gte=month_start,
                created_at__lt=next_month,
            ).count()
    except DatabaseError:
        logger.warning('Receipt sequence lookup failed; falling back to a random suffix', exc_info=True)
        return _random_receipt_number(prefix, period)

    return f"{prefix}-{period}-{issued + 1:04d}"


def _issue_receipt(fields):
    attempts = max(1, int(settings.FEE_RECEIPT_NUMBER_RETRIES))
    now = timezone.localtime()
    number = generate_receipt_number(school=fields['school'], now=now)

    for attempt in range(1, attempts + 1):
        receipt = FeeReceipt(receipt_number=number, **fields)
        try:
            with transaction.atomic():
                receipt.save()
            return receipt
        except IntegrityError:
            taken = FeeReceipt.objects.filter(school=fields['school'], receipt_number=number.upper()).exists()
            if not taken:
                raise
            logger.warning(
                'Receipt number %s already taken (attempt %s/%s); retrying with a random suffix',
                number,
                attempt,
                attempts,
            )
            number = _random_receipt_number(settings.FEE_RECEIPT_PREFIX, now.strftime('%Y%m'))

    raise NumberingCollisionError(f"Could not allocate a unique receipt number after {attempts} attempts.")


def _credit_receipt(receipt, collected_by=None):
    # The one-to-one receipt link makes a second credit fail instead of double counting.
    entry = FeePaymentEntry.for_receipt(receipt, collected_by=collected_by)
    entry.save()
    return _apply_payment(receipt.fee_collection_id, to_decimal(receipt.amount))


def _mark_receipt_cancelled(receipt, *, cancelled_by, reason):
    now = timezone.now()
    updated = FeeReceipt.objects.filter(pk=receipt.pk, status=FeeReceipt.STATUS_ACTIVE).update(
        status=FeeReceipt.STATUS_CANCELLED,
        cancelled_at=now,
        cancelled_by=cancelled_by,
        cancellation_reason=reason[:255],
        updated_at=now,
    )
    if not updated:
        raise AlreadyCancelledError(f"Receipt {receipt.receipt_number} is already cancelled.")
    receipt.refresh_from_db()
    return receipt


def _reverse_receipt(receipt):
    # Only the request that deactivates the entry reverses the amount.
    deactivated = FeePaymentEntry.objects.filter(receipt=receipt, is_active=True).update(
        is_active=False,
        reversed_at=timezone.now(),
    )
    if not deactivated:
        return FeeCollection.objects.get(pk=receipt.fee_collection_id)
    return _reverse_payment(receipt.fee_collection_id, to_decimal(receipt.amount))


def create_fee_receipt(
    *,
    school,
    student,
    collection,
    amount,
    payment_method,
    created_by,
    payment_date=None,
    transaction_id='',
    cheque_number='',
    cheque_date=None,
    bank_name='',
    remarks='',
):
    student = get_for_school(Student, school, student, 'Student')
    collection = get_for_school(FeeCollection, school, collection, 'Fee collection')
    if collection.student_id != student.id:
        raise LedgerValidationError('Fee collection does not belong to the selected student.')

    amount = _positive_amount(amount, 'Receipt amount')
    if payment_method not in dict(FeeReceipt.PAYMENT_METHOD_CHOICES):
        raise LedgerValidationError('Invalid payment method.')
    if payment_method == FeeReceipt.METHOD_CHEQUE and not (cheque_number or '').strip():
        raise LedgerValidationError('Cheque number is required for cheque payments.')
    if collection.status == FeeCollection.STATUS_CANCELLED:
        raise InvalidStateError('Receipts cannot be issued against a cancelled fee collection.')

    due_amount, _ = collection.derive_state()
    if amount > due_amount:
        raise ExceedsDueError(amount, due_amount)

    fields = {
        'school': school,
        'student': student,
        'fee_collection': collection,
        'fee_structure_id': collection.fee_structure_id,
        'academic_year': collection.academic_year,
        'amount': amount,
        'payment_date': parse_date_value(payment_date, 'Payment date') or timezone.localdate(),
        'payment_method': payment_method,
        'transaction_id': (transaction_id or '')[:120],
        'cheque_number': (cheque_number or '').strip()[:50],
        'cheque_date': parse_date_value(cheque_date, 'Cheque date'),
        'bank_name': (bank_name or '')[:120],
        'remarks': (remarks or '')[:500],
        'created_by': created_by,
    }
    _validated(FeeReceipt(**fields), exclude=['receipt_number'])

    if settings.FEE_LEDGER_ATOMIC_RECEIPTS:
        with transaction.atomic():
            receipt = _issue_receipt(fields)
            collection = _credit_receipt(receipt, collected_by=created_by)
    else:
        receipt = _issue_receipt(fields)
        try:
            with transaction.atomic():
                collection = _credit_receipt(receipt, collected_by=created_by)
        except (FeeLedgerError, DatabaseError) as exc:
            logger.error(
                'Receipt %s saved but not credited to fee collection %s: %s',
                receipt.receipt_number,
                receipt.fee_collection_id,
                exc,
            )
            log_audit_event(
                action='fees.receipt_partially_applied',
                school=school,
                user=created_by,
                target=receipt,
                details=f"Stage=credit; Amount={receipt.amount}",
            )
            raise PartiallyAppliedError(receipt, PartiallyAppliedError.STAGE_CREDIT) from exc

    log_audit_event(
        action='fees.receipt_created',
        school=school,
        user=created_by,
        target=receipt,
        details=f"Receipt={receipt.receipt_number}; Amount={receipt.amount}; Due={collection.due_amount}",
    )
    logger.info(
        'Issued receipt %s for %s on fee collection %s',
        receipt.receipt_number,
        receipt.amount,
        collection.pk,
    )
    return {
        'receipt': receipt,
        'collection': collection,
    }


def cancel_fee_receipt(*, school, receipt, cancelled_by, reason=''):
    receipt = get_for_school(FeeReceipt, school, receipt, 'Fee receipt')
    if receipt.status == FeeReceipt.STATUS_CANCELLED:
        raise AlreadyCancelledError(f"Receipt {receipt.receipt_number} is already cancelled.")
    reason = (reason or '').strip() or DEFAULT_CANCELLATION_REASON

    # Checked before the receipt changes so a refused reversal leaves nothing half done.
    if FeeCollection.objects.filter(pk=receipt.fee_collection_id, status=FeeCollection.STATUS_CANCELLED).exists():
        raise InvalidStateError(
            f"Receipt {receipt.receipt_number} belongs to a cancelled fee collection and cannot be cancelled."
        )

    if settings.FEE_LEDGER_ATOMIC_RECEIPTS:
        with transaction.atomic():
            receipt = _mark_receipt_cancelled(receipt, cancelled_by=cancelled_by, reason=reason)
            collection = _reverse_receipt(receipt)
    else:
        with transaction.atomic():
            receipt = _mark_receipt_cancelled(receipt, cancelled_by=cancelled_by, reason=reason)
        try:
            with transaction.atomic():
                collection = _reverse_receipt(receipt)
        except (FeeLedgerError, DatabaseError) as exc:
            logger.error(
                'Receipt %s cancelled but its amount is still credited to fee collection %s: %s',
                receipt.receipt_number,
                receipt.fee_collection_id,
                exc,
            )
            log_audit_event(
                action='fees.receipt_partially_applied',
                school=school,
                user=cancelled_by,
                target=receipt,
                details=f"Stage=reversal; Amount={receipt.amount}",
            )
            raise PartiallyAppliedError(receipt, PartiallyAppliedError.STAGE_REVERSAL) from exc

    log_audit_event(
        action='fees.receipt_cancelled',
        school=school,
        user=cancelled_by,
        target=receipt,
        details=f"Receipt={receipt.receipt_number}; Reason={reason}; Due={collection.due_amount}",
    )
    logger.info('Cancelled receipt %s; fee collection %s due %s', receipt.receipt_number, collection.pk, collection.due_amount)
    return {
        'receipt': receipt,
        'collection': collection,
    }


# Reconciliation

@transaction.atomic
def reconcile_fee_receipt(*, receipt, performed_by=None):
    """Finish an interrupted credit or reversal.

    Returns ``'credited'``, ``'reversed'`` or ``None`` when the receipt was
    already consistent. Safe to run repeatedly. A receipt whose collection
    has since been cancelled cannot be finished automatically and raises
    ``InvalidStateError``; ``find_ledger_discrepancies`` lists those as
    stranded.
    """
    if receipt.status == FeeReceipt.STATUS_ACTIVE:
        pending = not FeePaymentEntry.objects.filter(receipt=receipt).exists()
        action = 'credited'
    else:
        pending = FeePaymentEntry.objects.filter(receipt=receipt, is_active=True).exists()
        action = 'reversed'
    if not pending:
        return None

    if FeeCollection.objects.filter(pk=receipt.fee_collection_id, status=FeeCollection.STATUS_CANCELLED).exists():
        raise InvalidStateError(
            f"Receipt {receipt.receipt_number} cannot be {action}: its fee collection is cancelled. "
            "Review it manually."
        )

    if action == 'credited':
        _credit_receipt(receipt, collected_by=receipt.created_by)
    else:
        _reverse_receipt(receipt)

    log_audit_event(
        action=f"fees.receipt_reconciled_{action}",
        school=receipt.school,
        user=performed_by,
        target=receipt,
        details=f"Receipt={receipt.receipt_number}; Amount={receipt.amount}",
    )
    logger.info('Reconciled receipt %s: %s', receipt.receipt_number, action)
    return action


def _active_paid_amount(collection_id):
    total = FeePaymentEntry.objects.filter(
        fee_collection_id=collection_id,
        is_active=True,
    ).aggregate(total=Sum('amount')).get('total')
    return quantize_amount(total)


@transaction.atomic
def reconcile_fee_collection(*, collection, performed_by=None):
    """Reset ``paid_amount`` to the sum of active entries and re-derive state."""
    drift = []

    def mutate(current):
        paid_amount = _active_paid_amount(current.pk)
        due_amount, status = current.derive_state()
        if (
            paid_amount == quantize_amount(current.paid_amount)
            and due_amount == quantize_amount(current.due_amount)
            and status == current.status
        ):
            return None
        drift.append((current.paid_amount, paid_amount))
        return {'paid_amount': paid_amount}

    collection = _mutate_collection(collection.pk, mutate)
    if drift:
        previous_paid, paid_amount = drift[-1]
        log_audit_event(
            action='fees.collection_reconciled',
            school=collection.school,
            user=performed_by,
            target=collection,
            details=f"Paid {previous_paid} -> {paid_amount}; Status={collection.status}",
        )
        logger.warning(
            'Fee collection %s paid amount corrected from %s to %s',
            collection.pk,
            previous_paid,
            paid_amount,
        )
    return {
        'collection': collection,
        'changed': bool(drift),
    }


def find_ledger_discrepancies(*, school=None):
    """Report receipts and collections whose figures disagree.

    ``uncredited_receipts`` and ``unreversed_receipts`` can be finished by
    ``reconcile_fee_receipt``. ``stranded_receipts`` are the same mismatches on
    collections that were cancelled in the meantime; they need a manual
    decision and are never retried.
    """
    receipts = FeeReceipt.objects.select_related('fee_collection')
    collections = FeeCollection.objects.all()
    if school is not None:
        receipts = receipts.for_school(school)
        collections = collections.for_school(school)

    mismatched = receipts.filter(
        Q(status=FeeReceipt.STATUS_ACTIVE, ledger_entry__isnull=True)
        | Q(status=FeeReceipt.STATUS_CANCELLED, ledger_entry__is_active=True)
    ).order_by('id')
    uncredited, unreversed, stranded = [], [], []
    for receipt in mismatched:
        if receipt.fee_collection.status == FeeCollection.STATUS_CANCELLED:
            stranded.append(receipt)
        elif receipt.status == FeeReceipt.STATUS_ACTIVE:
            uncredited.append(receipt)
        else:
            unreversed.append(receipt)

    active_totals = {
        row['fee_collection_id']: quantize_amount(row['total'])
        for row in FeePaymentEntry.objects.filter(
            fee_collection__in=collections,
            is_active=True,
        ).values('fee_collection_id').annotate(total=Sum('amount')).order_by()
    }
    drifted = [
        collection
        for collection in collections.order_by('id')
        if active_totals.get(collection.pk, ZERO) != quantize_amount(collection.paid_amount)
    ]

    return {
        'uncredited_receipts': uncredited,
        'unreversed_receipts': unreversed,
        'stranded_receipts': stranded,
        'drifted_collections': drifted,
    }


# Printable receipt

def image_to_pdf_bytes(images):
    if not images:
        return b''
    rgb_images = [img.convert('RGB') for img in images]
    output = BytesIO()
    rgb_images[0].save(output, format='PDF', save_all=True, append_images=rgb_images[1:])
    return output.getvalue()


def build_fee_receipt_image(receipt: FeeReceipt):
    width = 1240
    height = 1754
    page = Image.new('RGB', (width, height), color='white')
    draw = ImageDraw.Draw(page)

    student = receipt.student
    collection = receipt.fee_collection

    draw.rectangle((30, 30, width - 30, height - 30), outline='black', width=3)
    draw.text((60, 60), f"{receipt.school.name} - Fee Receipt", fill='black')
    draw.text((60, 110), f"Receipt No: {receipt.receipt_number}", fill='black')
    draw.text((60, 150), f"Issued On: {timezone.localtime(receipt.created_at).strftime('%Y-%m-%d %H:%M')}", fill='black')
    draw.text((60, 190), f"Academic Year: {receipt.academic_year}", fill='black')
    draw.text((60, 230), f"Student: {student.full_name} ({student.admission_number})", fill='black')
    draw.text((60, 270), f"Fee: {receipt.fee_structure.name}{' - ' + collection.month if collection.month else ''}", fill='black')
    draw.text((60, 310), f"Payment Date: {receipt.payment_date}", fill='black')
    draw.text((60, 350), f"Method: {receipt.get_payment_method_display()}", fill='black')

    reference = receipt.transaction_id or '-'
    if receipt.payment_method == FeeReceipt.METHOD_CHEQUE:
        reference = f"Cheque {receipt.cheque_number} {receipt.bank_name}".strip()
    draw.text((60, 390), f"Reference: {reference}", fill='black')

    y = 470
    draw.text((60, y), 'Particulars', fill='black')
    draw.text((860, y), 'Amount', fill='black')
    draw.line((60, y + 26, width - 60, y + 26), fill='black')
    y += 50

    rows = [
        ('Total Fee', collection.total_amount),
        ('Discount', collection.discount_amount),
        ('Late Fee', collection.late_fee_amount),
    ]
    for label, value in rows:
        draw.text((60, y), label, fill='black')
        draw.text((860, y), str(quantize_amount(value)), fill='black')
        y += 36

    y += 20
    draw.line((60, y, width - 60, y), fill='black')
    y += 30

    draw.text((60, y), f"Amount Received: {quantize_amount(receipt.amount)}", fill='black')
    y += 36
    draw.text((60, y), f"Balance Due: {quantize_amount(collection.due_amount)}", fill='black')
    y += 70

    if receipt.status == FeeReceipt.STATUS_CANCELLED:
        draw.text((60, y), f"STATUS: CANCELLED ({receipt.cancellation_reason})", fill='black')

    return page


def generate_fee_receipt_pdf(receipt: FeeReceipt) -> bytes:
    image = build_fee_receipt_image(receipt)
    return image_to_pdf_bytes([image])

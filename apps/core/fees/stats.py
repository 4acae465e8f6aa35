from django.db.models import Avg, Count, DecimalField, ExpressionWrapper, F, Q, Sum
from django.utils import timezone

from apps.core.students.models import Student
from apps.core.utils.money import ZERO, quantize_amount

from .exceptions import LedgerValidationError, NotFoundError
from .models import FeeCategory, FeeCollection, FeeReceipt, FeeStructure
from .services import get_for_school, parse_date_value

MONEY_FIELD = DecimalField(max_digits=14, decimal_places=2)


def _student_q(search):
    return (
        Q(student__first_name__icontains=search)
        | Q(student__last_name__icontains=search)
        | Q(student__admission_number__icontains=search)
    )


def _date_range(start_date, end_date):
    start_date = parse_date_value(start_date, 'Start date')
    end_date = parse_date_value(end_date, 'End date')
    if start_date and end_date and start_date > end_date:
        raise LedgerValidationError('Start date must be on or before end date.')
    return start_date, end_date


# Fee categories

def get_fee_category(*, school, category_id):
    return get_for_school(FeeCategory, school, category_id, 'Fee category')


def list_fee_categories(*, school, is_active=None, search=None):
    queryset = FeeCategory.objects.for_school(school)
    if is_active is not None:
        queryset = queryset.filter(is_active=is_active)

    search = (search or '').strip()
    if search:
        queryset = queryset.filter(Q(name__icontains=search) | Q(description__icontains=search))
    return queryset.order_by('name', 'id')


def active_fee_categories(*, school):
    return list_fee_categories(school=school, is_active=True)


# Fee structures

def list_fee_structures(*, school, academic_year=None, school_class=None, category=None, status=None, search=None):
    queryset = (
        FeeStructure.objects.for_school(school)
        .for_academic_year(academic_year)
        .select_related('category', 'school_class')
        .prefetch_related('components__category')
    )
    if school_class:
        queryset = queryset.filter(school_class=school_class)
    if category:
        queryset = queryset.filter(category=category)
    if status:
        queryset = queryset.filter(status=status)

    search = (search or '').strip()
    if search:
        queryset = queryset.filter(Q(name__icontains=search) | Q(description__icontains=search))
    return queryset.order_by('academic_year', 'name', 'id')


def active_fee_structures(*, school, school_class=None, academic_year=None):
    """Active structures billable to a class, school-wide ones included."""
    queryset = FeeStructure.objects.for_school(school).for_academic_year(academic_year).filter(
        status=FeeStructure.STATUS_ACTIVE,
    )
    if school_class:
        queryset = queryset.filter(Q(school_class=school_class) | Q(school_class__isnull=True))
    else:
        queryset = queryset.filter(school_class__isnull=True)
    return queryset.select_related('category', 'school_class').order_by('name', 'id')


# Fee collections

def list_fee_collections(
    *,
    school,
    academic_year=None,
    status=None,
    student=None,
    school_class=None,
    fee_structure=None,
    month=None,
    search=None,
):
    queryset = (
        FeeCollection.objects.for_school(school)
        .for_academic_year(academic_year)
        .select_related('student', 'student__current_class', 'fee_structure', 'fee_structure__category')
    )
    if status == 'unpaid':
        queryset = queryset.filter(status__in=FeeCollection.OPEN_STATUSES)
    elif status:
        queryset = queryset.filter(status=status)
    if student:
        queryset = queryset.filter(student=student)
    if school_class:
        queryset = queryset.filter(student__current_class=school_class)
    if fee_structure:
        queryset = queryset.filter(fee_structure=fee_structure)
    if month:
        queryset = queryset.filter(month=month)

    search = (search or '').strip()
    if search:
        queryset = queryset.filter(_student_q(search))
    return queryset.order_by('-created_at', '-id')


def list_due_collections(*, school, academic_year, school_class=None, search=None):
    if not academic_year:
        raise LedgerValidationError('Academic year is required.')
    queryset = list_fee_collections(
        school=school,
        academic_year=academic_year,
        status='unpaid',
        school_class=school_class,
        search=search,
    )
    return queryset.filter(due_amount__gt=0).order_by('due_date', 'id')


def student_due_summary(*, school, academic_year, school_class=None, search=None, today=None):
    """Outstanding dues per student, bucketed by how many months overdue.

    One-time charges and collections without a billing month are reported
    as other charges rather than by age.
    """
    today = today or timezone.localdate()
    summaries = {}

    for collection in list_due_collections(
        school=school,
        academic_year=academic_year,
        school_class=school_class,
        search=search,
    ):
        row = summaries.setdefault(collection.student_id, {
            'student': collection.student,
            'one_month_due': ZERO,
            'two_month_due': ZERO,
            'three_month_due': ZERO,
            'other_charges_due': ZERO,
            'total_due': ZERO,
            'collections': [],
        })

        due_amount = quantize_amount(collection.due_amount)
        is_other_charge = (
            collection.fee_structure.frequency == FeeStructure.FREQUENCY_ONE_TIME
            or not collection.month
        )
        if is_other_charge:
            row['other_charges_due'] += due_amount
        else:
            months_overdue = max((today - collection.due_date).days, 0) // 30
            if months_overdue >= 3:
                row['three_month_due'] += due_amount
            elif months_overdue == 2:
                row['two_month_due'] += due_amount
            else:
                row['one_month_due'] += due_amount

        row['total_due'] += due_amount
        row['collections'].append(collection)

    return list(summaries.values())


def list_overdue_collections(*, school, academic_year=None, today=None):
    today = today or timezone.localdate()
    return (
        FeeCollection.objects.for_school(school)
        .for_academic_year(academic_year)
        .filter(status=FeeCollection.STATUS_OVERDUE, due_date__lt=today)
        .select_related('student', 'fee_structure')
        .order_by('due_date', 'id')
    )


def collection_stats(*, school, academic_year=None, start_date=None, end_date=None):
    """Billing totals for a school; cancelled collections count only in ``status_counts``."""
    start_date, end_date = _date_range(start_date, end_date)
    queryset = FeeCollection.objects.for_school(school).for_academic_year(academic_year)
    if start_date:
        queryset = queryset.filter(created_at__date__gte=start_date)
    if end_date:
        queryset = queryset.filter(created_at__date__lte=end_date)

    billed = ExpressionWrapper(
        F('total_amount') - F('discount_amount') + F('late_fee_amount'),
        output_field=MONEY_FIELD,
    )
    totals = queryset.exclude(status=FeeCollection.STATUS_CANCELLED).aggregate(
        total_collections=Count('id'),
        total_billed=Sum(billed),
        total_paid=Sum('paid_amount'),
        total_due=Sum('due_amount'),
        average_paid=Avg('paid_amount'),
    )

    status_counts = {status: 0 for status, _ in FeeCollection.STATUS_CHOICES}
    for row in queryset.values('status').annotate(count=Count('id')).order_by():
        status_counts[row['status']] = row['count']

    return {
        'total_collections': totals['total_collections'],
        'total_billed': quantize_amount(totals['total_billed']),
        'total_paid': quantize_amount(totals['total_paid']),
        'total_due': quantize_amount(totals['total_due']),
        'average_paid': quantize_amount(totals['average_paid']),
        'status_counts': status_counts,
    }


# Fee receipts

def get_receipt(*, school, receipt_id):
    return get_for_school(FeeReceipt, school, receipt_id, 'Fee receipt')


def get_receipt_by_number(*, school, receipt_number):
    number = (receipt_number or '').strip().upper()
    if not number:
        raise LedgerValidationError('Receipt number is required.')
    receipt = (
        FeeReceipt.objects.for_school(school)
        .select_related('student', 'fee_collection', 'fee_structure')
        .filter(receipt_number=number)
        .first()
    )
    if receipt is None:
        raise NotFoundError(f"Receipt {number} not found.")
    return receipt


def list_receipts(
    *,
    school,
    academic_year=None,
    status=FeeReceipt.STATUS_ACTIVE,
    payment_method=None,
    student=None,
    start_date=None,
    end_date=None,
    search=None,
):
    start_date, end_date = _date_range(start_date, end_date)
    queryset = (
        FeeReceipt.objects.for_school(school)
        .for_academic_year(academic_year)
        .select_related('student', 'fee_structure', 'fee_collection', 'created_by')
    )
    if status:
        queryset = queryset.filter(status=status)
    if payment_method:
        queryset = queryset.filter(payment_method=payment_method)
    if student:
        queryset = queryset.filter(student=student)
    if start_date:
        queryset = queryset.filter(payment_date__gte=start_date)
    if end_date:
        queryset = queryset.filter(payment_date__lte=end_date)

    search = (search or '').strip()
    if search:
        queryset = queryset.filter(_student_q(search) | Q(receipt_number__icontains=search))
    return queryset.order_by('-created_at', '-id')


def list_receipts_by_student(*, school, student, academic_year=None):
    student = get_for_school(Student, school, student, 'Student')
    return (
        FeeReceipt.objects.for_school(school)
        .for_academic_year(academic_year)
        .filter(student=student, status=FeeReceipt.STATUS_ACTIVE)
        .select_related('fee_structure', 'fee_collection', 'created_by')
        .order_by('-payment_date', '-id')
    )


def list_receipts_by_date_range(*, school, start_date, end_date):
    if not start_date or not end_date:
        raise LedgerValidationError('Start date and end date are required.')
    return list_receipts(school=school, start_date=start_date, end_date=end_date).order_by('-payment_date', '-id')


def receipt_stats(*, school, academic_year=None, start_date=None, end_date=None):
    start_date, end_date = _date_range(start_date, end_date)
    scoped = FeeReceipt.objects.for_school(school).for_academic_year(academic_year)

    active = scoped.filter(status=FeeReceipt.STATUS_ACTIVE)
    summary_rows = active
    if start_date:
        summary_rows = summary_rows.filter(payment_date__gte=start_date)
    if end_date:
        summary_rows = summary_rows.filter(payment_date__lte=end_date)
    summary = summary_rows.aggregate(
        total_receipts=Count('id'),
        total_amount=Sum('amount'),
        average_amount=Avg('amount'),
    )

    by_payment_method = [
        {
            'payment_method': row['payment_method'],
            'count': row['count'],
            'total_amount': quantize_amount(row['total_amount']),
        }
        for row in active.values('payment_method').annotate(
            count=Count('id'),
            total_amount=Sum('amount'),
        ).order_by('-total_amount', 'payment_method')
    ]

    status_counts = {status: 0 for status, _ in FeeReceipt.STATUS_CHOICES}
    for row in scoped.values('status').annotate(count=Count('id')).order_by():
        status_counts[row['status']] = row['count']

    return {
        'summary': {
            'total_receipts': summary['total_receipts'],
            'total_amount': quantize_amount(summary['total_amount']),
            'average_amount': quantize_amount(summary['average_amount']),
        },
        'status_counts': status_counts,
        'by_payment_method': by_payment_method,
    }

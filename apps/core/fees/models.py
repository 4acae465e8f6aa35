from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from apps.core.academics.models import SchoolClass
from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.utils.managers import SchoolManager
from apps.core.utils.money import ZERO, quantize_amount, to_decimal

from .exceptions import ConflictError


STATUS_PENDING = 'pending'
STATUS_PARTIAL = 'partial'
STATUS_PAID = 'paid'
STATUS_OVERDUE = 'overdue'
STATUS_CANCELLED = 'cancelled'


def derive_collection_state(
    *,
    total_amount,
    discount_amount,
    late_fee_amount,
    paid_amount,
    due_date,
    status,
    today=None,
):
    """Return ``(due_amount, status)`` for a collection's stored figures.

    Pure function of the inputs; the stored status is only consulted so that
    ``cancelled`` stays terminal.
    """
    final_amount = quantize_amount(
        to_decimal(total_amount) - to_decimal(discount_amount) + to_decimal(late_fee_amount)
    )
    paid = quantize_amount(paid_amount)
    due = final_amount - paid
    if due < 0:
        due = ZERO

    if status == STATUS_CANCELLED:
        return due, STATUS_CANCELLED
    if paid >= final_amount:
        return ZERO, STATUS_PAID
    if paid > 0:
        return due, STATUS_PARTIAL

    today = today or timezone.localdate()
    if due_date and today > due_date:
        return due, STATUS_OVERDUE
    return due, STATUS_PENDING


class FinancialRecordModel(models.Model):
    class Meta:
        abstract = True

    def delete(self, *args, **kwargs):
        raise ConflictError('Financial records cannot be deleted. Use the cancellation workflow.')


class FeeCategory(models.Model):
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_categories',
    )
    objects = SchoolManager()

    name = models.CharField(max_length=100)
    description = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name', 'id']
        verbose_name_plural = 'fee categories'
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'name'],
                name='unique_fee_category_name_per_school',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'is_active'], name='fee_category_active_idx'),
        ]

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({'name': 'Fee category name is required.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.name


class FeeStructure(models.Model):
    FREQUENCY_ONE_TIME = 'one-time'
    FREQUENCY_MONTHLY = 'monthly'
    FREQUENCY_QUARTERLY = 'quarterly'
    FREQUENCY_TERM = 'term'
    FREQUENCY_SEMI_ANNUAL = 'semi-annual'
    FREQUENCY_ANNUAL = 'annual'
    FREQUENCY_CHOICES = (
        (FREQUENCY_ONE_TIME, 'One Time'),
        (FREQUENCY_MONTHLY, 'Monthly'),
        (FREQUENCY_QUARTERLY, 'Quarterly'),
        (FREQUENCY_TERM, 'Term'),
        (FREQUENCY_SEMI_ANNUAL, 'Semi Annual'),
        (FREQUENCY_ANNUAL, 'Annual'),
    )

    TYPE_FIXED = 'fixed'
    TYPE_PERCENTAGE = 'percentage'
    ADJUSTMENT_TYPE_CHOICES = (
        (TYPE_FIXED, 'Fixed'),
        (TYPE_PERCENTAGE, 'Percentage'),
    )

    STATUS_ACTIVE = 'active'
    STATUS_INACTIVE = 'inactive'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_INACTIVE, 'Inactive'),
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_structures',
    )
    objects = SchoolManager()

    name = models.CharField(max_length=100)
    category = models.ForeignKey(
        FeeCategory,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_structures',
    )
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_structures',
    )
    academic_year = models.CharField(max_length=20)
    amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    frequency = models.CharField(max_length=20, choices=FREQUENCY_CHOICES, default=FREQUENCY_MONTHLY)
    due_day = models.PositiveSmallIntegerField(
        default=1,
        validators=[MinValueValidator(1), MaxValueValidator(31)],
    )

    late_fee_enabled = models.BooleanField(default=False)
    late_fee_type = models.CharField(max_length=20, choices=ADJUSTMENT_TYPE_CHOICES, default=TYPE_FIXED)
    late_fee_value = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    late_fee_grace_days = models.PositiveIntegerField(default=0)

    discount_enabled = models.BooleanField(default=False)
    discount_type = models.CharField(max_length=20, choices=ADJUSTMENT_TYPE_CHOICES, default=TYPE_FIXED)
    discount_value = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    discount_description = models.CharField(max_length=255, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    description = models.CharField(max_length=500, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_fee_structures',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['academic_year', 'name', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'name', 'school_class', 'academic_year'],
                condition=Q(school_class__isnull=False),
                name='unique_fee_structure_per_class_year',
            ),
            models.UniqueConstraint(
                fields=['school', 'name', 'academic_year'],
                condition=Q(school_class__isnull=True),
                name='unique_school_wide_fee_structure_per_year',
            ),
            models.CheckConstraint(
                condition=Q(amount__gte=0) & Q(total_amount__gte=0),
                name='fee_structure_non_negative_amounts',
            ),
            models.CheckConstraint(
                condition=Q(due_day__gte=1) & Q(due_day__lte=31),
                name='fee_structure_due_day_range',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'academic_year', 'status'], name='fee_structure_year_idx'),
            models.Index(fields=['school', 'school_class'], name='fee_structure_class_idx'),
        ]

    def clean(self):
        super().clean()

        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({'name': 'Fee structure name is required.'})
        if not (self.academic_year or '').strip():
            raise ValidationError({'academic_year': 'Academic year is required.'})

        if self.school_class_id and self.school_class.school_id != self.school_id:
            raise ValidationError({'school_class': 'Class must belong to selected school.'})
        if self.category_id and self.category.school_id != self.school_id:
            raise ValidationError({'category': 'Fee category must belong to selected school.'})

        if self.late_fee_value is None or self.late_fee_value < 0:
            raise ValidationError({'late_fee_value': 'Late fee cannot be negative.'})
        if self.discount_value is None or self.discount_value < 0:
            raise ValidationError({'discount_value': 'Discount cannot be negative.'})
        if self.discount_type == self.TYPE_PERCENTAGE and self.discount_value > 100:
            raise ValidationError({'discount_value': 'Discount percentage cannot exceed 100.'})
        if self.late_fee_type == self.TYPE_PERCENTAGE and self.late_fee_value > 100:
            raise ValidationError({'late_fee_value': 'Late fee percentage cannot exceed 100.'})

    def calculate_discount(self):
        """Discount for one billing of this structure, never above its total."""
        if not self.discount_enabled:
            return ZERO

        total = to_decimal(self.total_amount)
        if self.discount_type == self.TYPE_PERCENTAGE:
            discount = total * to_decimal(self.discount_value) / 100
        else:
            discount = to_decimal(self.discount_value)

        discount = quantize_amount(discount)
        if discount > total:
            return quantize_amount(total)
        return discount if discount > 0 else ZERO

    def calculate_late_fee(self, days_late):
        """Late fee charged per day past the grace period."""
        if not self.late_fee_enabled or days_late <= self.late_fee_grace_days:
            return ZERO

        effective_days = days_late - self.late_fee_grace_days
        if self.late_fee_type == self.TYPE_PERCENTAGE:
            per_day = to_decimal(self.total_amount) * to_decimal(self.late_fee_value) / 100
        else:
            per_day = to_decimal(self.late_fee_value)
        return quantize_amount(per_day * effective_days)

    @property
    def final_amount(self):
        return quantize_amount(to_decimal(self.total_amount) - self.calculate_discount())

    @property
    def is_active(self):
        return self.status == self.STATUS_ACTIVE

    def delete(self, *args, **kwargs):
        usage = self.collections.count()
        if usage:
            raise ConflictError(
                f"Cannot delete fee structure. It is being used in {usage} fee collection(s). "
                "You can deactivate it instead."
            )
        return super().delete(*args, **kwargs)

    def __str__(self):
        scope = self.school_class.name if self.school_class_id else 'All Classes'
        return f"{self.name} - {scope} ({self.academic_year})"


class FeeStructureComponent(models.Model):
    fee_structure = models.ForeignKey(
        FeeStructure,
        on_delete=models.CASCADE,
        related_name='components',
    )
    category = models.ForeignKey(
        FeeCategory,
        on_delete=models.PROTECT,
        related_name='structure_components',
    )
    label = models.CharField(max_length=100, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ['id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='fee_component_amount_positive',
            ),
        ]

    def __str__(self):
        return f"{self.label or self.category.name}: {self.amount}"


class FeeCollection(models.Model):
    STATUS_PENDING = STATUS_PENDING
    STATUS_PARTIAL = STATUS_PARTIAL
    STATUS_PAID = STATUS_PAID
    STATUS_OVERDUE = STATUS_OVERDUE
    STATUS_CANCELLED = STATUS_CANCELLED
    STATUS_CHOICES = (
        (STATUS_PENDING, 'Pending'),
        (STATUS_PARTIAL, 'Partial'),
        (STATUS_PAID, 'Paid'),
        (STATUS_OVERDUE, 'Overdue'),
        (STATUS_CANCELLED, 'Cancelled'),
    )
    OPEN_STATUSES = (STATUS_PENDING, STATUS_PARTIAL, STATUS_OVERDUE)

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_collections',
    )
    objects = SchoolManager()

    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='fee_collections',
    )
    fee_structure = models.ForeignKey(
        FeeStructure,
        on_delete=models.PROTECT,
        related_name='collections',
    )
    academic_year = models.CharField(max_length=20)
    month = models.CharField(max_length=20, blank=True, default='')

    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    late_fee_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    due_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    due_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    remarks = models.TextField(blank=True)
    version = models.PositiveIntegerField(default=0)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_fee_collections',
    )
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cancelled_fee_collections',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['due_date', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'student', 'fee_structure', 'academic_year', 'month'],
                condition=~Q(status=STATUS_CANCELLED),
                name='unique_open_fee_collection_per_period',
            ),
            models.CheckConstraint(
                condition=(
                    Q(total_amount__gte=0)
                    & Q(discount_amount__gte=0)
                    & Q(late_fee_amount__gte=0)
                    & Q(paid_amount__gte=0)
                    & Q(due_amount__gte=0)
                ),
                name='fee_collection_non_negative_amounts',
            ),
            models.CheckConstraint(
                condition=Q(discount_amount__lte=F('total_amount')),
                name='fee_collection_discount_not_above_total',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'academic_year', 'status'], name='fee_collection_year_idx'),
            models.Index(fields=['school', 'student'], name='fee_collection_student_idx'),
            models.Index(fields=['school', 'due_date'], name='fee_collection_due_idx'),
        ]

    @property
    def final_amount(self):
        return quantize_amount(
            to_decimal(self.total_amount) - to_decimal(self.discount_amount) + to_decimal(self.late_fee_amount)
        )

    @property
    def days_overdue(self):
        if self.status in (STATUS_PAID, STATUS_CANCELLED):
            return 0
        days = (timezone.localdate() - self.due_date).days
        return days if days > 0 else 0

    def derive_state(self, today=None):
        return derive_collection_state(
            total_amount=self.total_amount,
            discount_amount=self.discount_amount,
            late_fee_amount=self.late_fee_amount,
            paid_amount=self.paid_amount,
            due_date=self.due_date,
            status=self.status,
            today=today,
        )

    def clean(self):
        super().clean()

        if self.student_id and self.student.school_id != self.school_id:
            raise ValidationError({'student': 'Student must belong to selected school.'})
        if self.fee_structure_id and self.fee_structure.school_id != self.school_id:
            raise ValidationError({'fee_structure': 'Fee structure must belong to selected school.'})
        if self.discount_amount is not None and self.total_amount is not None:
            if self.discount_amount > self.total_amount:
                raise ValidationError({'discount_amount': 'Discount cannot exceed total amount.'})

        if not self.pk:
            return

        previous = FeeCollection.objects.filter(pk=self.pk).first()
        if previous and previous.status == STATUS_CANCELLED and self.status != STATUS_CANCELLED:
            raise ValidationError('Cancelled fee collection cannot be re-activated.')

    def save(self, *args, **kwargs):
        self.month = (self.month or '').strip()
        self.due_amount, self.status = self.derive_state()
        update_fields = kwargs.get('update_fields')
        if update_fields is not None:
            kwargs['update_fields'] = set(update_fields) | {'due_amount', 'status'}
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        if to_decimal(self.paid_amount) > 0:
            raise ConflictError('Cannot delete a fee collection with payments. Cancel it instead.')
        if self.receipts.exists() or self.entries.exists():
            raise ConflictError('Cannot delete a fee collection that has receipts. Cancel it instead.')
        return super().delete(*args, **kwargs)

    def __str__(self):
        period = f" {self.month}" if self.month else ''
        return f"{self.student.admission_number} - {self.fee_structure.name}{period} ({self.academic_year})"


class FeeReceipt(FinancialRecordModel):
    METHOD_CASH = 'cash'
    METHOD_CHEQUE = 'cheque'
    METHOD_ONLINE = 'online'
    METHOD_CARD = 'card'
    METHOD_BANK_TRANSFER = 'bank_transfer'
    PAYMENT_METHOD_CHOICES = (
        (METHOD_CASH, 'Cash'),
        (METHOD_CHEQUE, 'Cheque'),
        (METHOD_ONLINE, 'Online'),
        (METHOD_CARD, 'Card'),
        (METHOD_BANK_TRANSFER, 'Bank Transfer'),
    )

    STATUS_ACTIVE = 'active'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_CANCELLED, 'Cancelled'),
    )

    receipt_number = models.CharField(max_length=50)
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_receipts',
    )
    objects = SchoolManager()

    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='fee_receipts',
    )
    fee_collection = models.ForeignKey(
        FeeCollection,
        on_delete=models.PROTECT,
        related_name='receipts',
    )
    fee_structure = models.ForeignKey(
        FeeStructure,
        on_delete=models.PROTECT,
        related_name='receipts',
    )
    academic_year = models.CharField(max_length=20)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_date = models.DateField(default=timezone.localdate)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default=METHOD_CASH)
    transaction_id = models.CharField(max_length=120, blank=True)
    cheque_number = models.CharField(max_length=50, blank=True)
    cheque_date = models.DateField(null=True, blank=True)
    bank_name = models.CharField(max_length=120, blank=True)
    remarks = models.CharField(max_length=500, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cancelled_fee_receipts',
    )
    cancellation_reason = models.CharField(max_length=255, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_fee_receipts',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'receipt_number'],
                name='unique_receipt_number_per_school',
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='fee_receipt_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'created_at'], name='fee_receipt_created_idx'),
            models.Index(fields=['school', 'payment_date'], name='fee_receipt_paid_on_idx'),
            models.Index(fields=['school', 'status'], name='fee_receipt_status_idx'),
            models.Index(fields=['student', 'status'], name='fee_receipt_student_idx'),
        ]

    IMMUTABLE_FIELDS = (
        'receipt_number',
        'school_id',
        'student_id',
        'fee_collection_id',
        'fee_structure_id',
        'academic_year',
        'amount',
        'payment_date',
        'payment_method',
        'transaction_id',
        'cheque_number',
        'cheque_date',
        'bank_name',
        'created_by_id',
    )

    def clean(self):
        super().clean()

        if self.amount is None or self.amount <= 0:
            raise ValidationError({'amount': 'Receipt amount must be greater than zero.'})

        if self.payment_method == self.METHOD_CHEQUE and not (self.cheque_number or '').strip():
            raise ValidationError({'cheque_number': 'Cheque number is required for cheque payments.'})

        if self.fee_collection_id:
            if self.fee_collection.school_id != self.school_id:
                raise ValidationError({'fee_collection': 'Fee collection school mismatch.'})
            if self.fee_collection.student_id != self.student_id:
                raise ValidationError({'fee_collection': 'Fee collection student mismatch.'})

        if self.status == self.STATUS_CANCELLED and not self.cancelled_at:
            raise ValidationError({'cancelled_at': 'Cancellation timestamp is required for cancelled receipt.'})

        if not self.pk:
            return

        previous = FeeReceipt.objects.filter(pk=self.pk).first()
        if not previous:
            return

        if any(getattr(previous, field) != getattr(self, field) for field in self.IMMUTABLE_FIELDS):
            raise ValidationError('Fee receipts are immutable. Cancel and issue a new receipt instead of editing.')

        if previous.status == self.STATUS_CANCELLED and self.status != self.STATUS_CANCELLED:
            raise ValidationError('Cancelled receipt cannot be re-activated.')

    def save(self, *args, **kwargs):
        self.receipt_number = (self.receipt_number or '').strip().upper()
        super().save(*args, **kwargs)

    @property
    def is_credited(self):
        return FeePaymentEntry.objects.filter(receipt=self, is_active=True).exists()

    def __str__(self):
        return self.receipt_number


class FeePaymentEntry(FinancialRecordModel):
    """One payment counted in a collection's ``paid_amount``.

    Entries are either ad-hoc (recorded directly on the collection) or backed
    by exactly one receipt. A collection's paid amount is the sum of its
    active entries; reversing a payment deactivates its entry.
    """

    SOURCE_ADHOC = 'adhoc'
    SOURCE_RECEIPT = 'receipt'
    SOURCE_CHOICES = (
        (SOURCE_ADHOC, 'Ad-hoc'),
        (SOURCE_RECEIPT, 'Receipt'),
    )

    fee_collection = models.ForeignKey(
        FeeCollection,
        on_delete=models.PROTECT,
        related_name='entries',
    )
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES)
    receipt = models.OneToOneField(
        FeeReceipt,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='ledger_entry',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_date = models.DateField(default=timezone.localdate)
    payment_method = models.CharField(
        max_length=20,
        choices=FeeReceipt.PAYMENT_METHOD_CHOICES,
        default=FeeReceipt.METHOD_CASH,
    )
    transaction_id = models.CharField(max_length=120, blank=True)
    remarks = models.CharField(max_length=500, blank=True)
    collected_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='collected_fee_entries',
    )
    is_active = models.BooleanField(default=True)
    reversed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['payment_date', 'id']
        verbose_name_plural = 'fee payment entries'
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='fee_entry_amount_positive',
            ),
            models.CheckConstraint(
                condition=(
                    (Q(source='receipt') & Q(receipt__isnull=False))
                    | (Q(source='adhoc') & Q(receipt__isnull=True))
                ),
                name='fee_entry_source_matches_receipt',
            ),
        ]
        indexes = [
            models.Index(fields=['fee_collection', 'is_active'], name='fee_entry_active_idx'),
        ]

    @classmethod
    def adhoc(cls, *, fee_collection, amount, payment_method, collected_by=None, payment_date=None,
              transaction_id='', remarks=''):
        return cls(
            fee_collection=fee_collection,
            source=cls.SOURCE_ADHOC,
            amount=quantize_amount(amount),
            payment_date=payment_date or timezone.localdate(),
            payment_method=payment_method,
            transaction_id=(transaction_id or '')[:120],
            remarks=(remarks or '')[:500],
            collected_by=collected_by,
        )

    @classmethod
    def for_receipt(cls, receipt, collected_by=None):
        return cls(
            fee_collection_id=receipt.fee_collection_id,
            source=cls.SOURCE_RECEIPT,
            receipt=receipt,
            amount=receipt.amount,
            payment_date=receipt.payment_date,
            payment_method=receipt.payment_method,
            transaction_id=receipt.transaction_id,
            remarks=f"Receipt {receipt.receipt_number}",
            collected_by=collected_by or receipt.created_by,
        )

    def __str__(self):
        label = self.receipt.receipt_number if self.receipt_id else 'ad-hoc'
        return f"{label}: {self.amount}"

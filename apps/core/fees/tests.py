from datetime import datetime, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db.models import F
from django.test import TestCase, override_settings
from django.utils import timezone

from apps.core.academics.models import SchoolClass
from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.users.models import AuditLog

from .exceptions import (
    AlreadyCancelledError,
    ConcurrentUpdateError,
    ConflictError,
    DuplicateBillingError,
    ExceedsDueError,
    InvalidStateError,
    LedgerValidationError,
    NotFoundError,
    NumberingCollisionError,
    PartiallyAppliedError,
)
from .models import (
    FeeCollection,
    FeePaymentEntry,
    FeeReceipt,
    FeeStructure,
    derive_collection_state,
)
from .services import (
    _mutate_collection,
    _reverse_payment,
    assess_late_fee,
    cancel_fee_collection,
    cancel_fee_receipt,
    create_fee_category,
    create_fee_collection,
    create_fee_receipt,
    create_fee_structure,
    delete_fee_category,
    delete_fee_collection,
    delete_fee_structure,
    find_ledger_discrepancies,
    generate_fee_receipt_pdf,
    generate_receipt_number,
    reconcile_fee_collection,
    reconcile_fee_receipt,
    record_fee_payment,
    refresh_overdue_statuses,
    update_fee_category,
    update_fee_collection,
    update_fee_structure,
)
from .stats import (
    active_fee_categories,
    collection_stats,
    get_receipt_by_number,
    list_due_collections,
    list_fee_categories,
    list_receipts,
    receipt_stats,
    student_due_summary,
)


class FeesBaseTestCase(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.today = timezone.localdate()
        self.academic_year = '2026-27'

        self.school = School.objects.create(name='Fee School', code='fee_school')
        self.school_class = SchoolClass.objects.create(
            school=self.school,
            name='8th',
            code='VIII',
            display_order=8,
        )
        self.student = Student.objects.create(
            school=self.school,
            admission_number='FEE-001',
            first_name='Riya',
            last_name='Sharma',
            current_class=self.school_class,
            roll_number='1',
        )
        self.accountant = user_model.objects.create_user(
            username='fees_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )

        self.tuition = create_fee_category(school=self.school, name='Tuition')
        self.structure = create_fee_structure(
            school=self.school,
            name='Monthly Tuition',
            academic_year=self.academic_year,
            school_class=self.school_class,
            category=self.tuition,
            amount=Decimal('5000.00'),
            created_by=self.accountant,
        )

    def bill(self, month='April', due_date=None, **kwargs):
        return create_fee_collection(
            school=self.school,
            student=kwargs.pop('student', self.student),
            fee_structure=kwargs.pop('fee_structure', self.structure),
            academic_year=self.academic_year,
            month=month,
            due_date=due_date or self.today + timedelta(days=10),
            created_by=self.accountant,
            **kwargs,
        )

    def pay(self, collection, amount, method=FeeReceipt.METHOD_CASH, **kwargs):
        return create_fee_receipt(
            school=self.school,
            student=collection.student,
            collection=collection,
            amount=amount,
            payment_method=method,
            created_by=self.accountant,
            **kwargs,
        )

    def assertCollectionState(self, collection, paid, due, status):
        collection.refresh_from_db()
        self.assertEqual(collection.paid_amount, Decimal(paid))
        self.assertEqual(collection.due_amount, Decimal(due))
        self.assertEqual(collection.status, status)


class DeriveCollectionStateTests(TestCase):
    def test_pending_before_due_date(self):
        due, status = derive_collection_state(
            total_amount=Decimal('100'),
            discount_amount=Decimal('10'),
            late_fee_amount=Decimal('5'),
            paid_amount=Decimal('0'),
            due_date=timezone.localdate(),
            status=FeeCollection.STATUS_PENDING,
        )
        self.assertEqual(due, Decimal('95.00'))
        self.assertEqual(status, FeeCollection.STATUS_PENDING)

    def test_unpaid_after_due_date_is_overdue(self):
        today = timezone.localdate()
        _, status = derive_collection_state(
            total_amount=Decimal('100'),
            discount_amount=Decimal('0'),
            late_fee_amount=Decimal('0'),
            paid_amount=Decimal('0'),
            due_date=today - timedelta(days=1),
            status=FeeCollection.STATUS_PENDING,
            today=today,
        )
        self.assertEqual(status, FeeCollection.STATUS_OVERDUE)

    def test_overpayment_clamps_due_to_zero(self):
        due, status = derive_collection_state(
            total_amount=Decimal('100'),
            discount_amount=Decimal('0'),
            late_fee_amount=Decimal('0'),
            paid_amount=Decimal('120'),
            due_date=timezone.localdate(),
            status=FeeCollection.STATUS_PARTIAL,
        )
        self.assertEqual(due, Decimal('0'))
        self.assertEqual(status, FeeCollection.STATUS_PAID)

    def test_cancelled_is_terminal(self):
        _, status = derive_collection_state(
            total_amount=Decimal('100'),
            discount_amount=Decimal('0'),
            late_fee_amount=Decimal('0'),
            paid_amount=Decimal('100'),
            due_date=timezone.localdate(),
            status=FeeCollection.STATUS_CANCELLED,
        )
        self.assertEqual(status, FeeCollection.STATUS_CANCELLED)


class FeeStructureTests(FeesBaseTestCase):
    def test_components_define_total(self):
        library = create_fee_category(school=self.school, name='Library')
        structure = create_fee_structure(
            school=self.school,
            name='Annual Charges',
            academic_year=self.academic_year,
            frequency=FeeStructure.FREQUENCY_ONE_TIME,
            components=[
                {'category': self.tuition, 'amount': '1200'},
                {'category': library.pk, 'amount': Decimal('300.50'), 'label': 'Library card'},
            ],
        )
        self.assertEqual(structure.total_amount, Decimal('1500.50'))
        self.assertEqual(structure.components.count(), 2)
        self.assertEqual(structure.components.last().label, 'Library card')

    def test_flat_amount_requires_category(self):
        with self.assertRaises(LedgerValidationError):
            create_fee_structure(
                school=self.school,
                name='Transport',
                academic_year=self.academic_year,
                amount=Decimal('900.00'),
            )

    def test_duplicate_name_for_class_and_year_is_conflict(self):
        with self.assertRaises(ConflictError):
            create_fee_structure(
                school=self.school,
                name='Monthly Tuition',
                academic_year=self.academic_year,
                school_class=self.school_class,
                category=self.tuition,
                amount=Decimal('10.00'),
            )

    def test_discount_and_late_fee_calculation(self):
        structure = update_fee_structure(
            school=self.school,
            structure=self.structure,
            changes={
                'discount': {'enabled': True, 'type': FeeStructure.TYPE_PERCENTAGE, 'value': '10'},
                'late_fee': {'enabled': True, 'type': FeeStructure.TYPE_PERCENTAGE, 'value': '1', 'grace_days': 2},
            },
        )
        self.assertEqual(structure.calculate_discount(), Decimal('500.00'))
        self.assertEqual(structure.final_amount, Decimal('4500.00'))
        self.assertEqual(structure.calculate_late_fee(2), Decimal('0'))
        self.assertEqual(structure.calculate_late_fee(5), Decimal('150.00'))

    def test_percentage_discount_above_hundred_is_rejected(self):
        with self.assertRaises(LedgerValidationError):
            update_fee_structure(
                school=self.school,
                structure=self.structure,
                changes={'discount': {'enabled': True, 'type': FeeStructure.TYPE_PERCENTAGE, 'value': '150'}},
            )

    def test_delete_referenced_structure_is_conflict(self):
        self.bill()
        with self.assertRaises(ConflictError) as ctx:
            delete_fee_structure(school=self.school, structure=self.structure)
        self.assertIn('1 fee collection(s)', ctx.exception.messages[0])
        self.assertTrue(FeeStructure.objects.filter(pk=self.structure.pk).exists())

    def test_delete_unused_structure(self):
        delete_fee_structure(school=self.school, structure=self.structure, deleted_by=self.accountant)
        self.assertFalse(FeeStructure.objects.filter(pk=self.structure.pk).exists())
        self.assertTrue(AuditLog.objects.filter(action='fees.structure_deleted').exists())

    def test_inactive_structure_cannot_be_billed(self):
        self.structure = update_fee_structure(
            school=self.school,
            structure=self.structure,
            changes={'status': FeeStructure.STATUS_INACTIVE},
        )
        with self.assertRaises(InvalidStateError):
            self.bill()

    def test_partial_policy_update_keeps_other_settings(self):
        update_fee_structure(
            school=self.school,
            structure=self.structure,
            changes={'discount': {'enabled': True, 'type': FeeStructure.TYPE_PERCENTAGE, 'value': '10'}},
        )
        structure = update_fee_structure(
            school=self.school,
            structure=self.structure,
            changes={'discount': {'enabled': False}},
        )
        self.assertFalse(structure.discount_enabled)
        self.assertEqual(structure.discount_type, FeeStructure.TYPE_PERCENTAGE)
        self.assertEqual(structure.discount_value, Decimal('10.00'))

        structure = update_fee_structure(
            school=self.school,
            structure=structure,
            changes={'discount': {'enabled': True}},
        )
        self.assertEqual(structure.calculate_discount(), Decimal('500.00'))

    def test_structure_edit_does_not_touch_existing_collections(self):
        collection = self.bill()
        self.structure = update_fee_structure(
            school=self.school,
            structure=self.structure,
            changes={'amount': '9000'},
        )
        self.assertEqual(self.structure.total_amount, Decimal('9000.00'))

        collection.refresh_from_db()
        self.assertEqual(collection.total_amount, Decimal('5000.00'))
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_PENDING)
        self.assertEqual(self.bill(month='May').total_amount, Decimal('9000.00'))


class FeeCategoryTests(FeesBaseTestCase):
    def test_rename_category(self):
        category = update_fee_category(
            school=self.school,
            category=self.tuition,
            changes={'name': ' Tuition Fee ', 'description': 'Term tuition'},
            updated_by=self.accountant,
        )
        self.assertEqual(category.name, 'Tuition Fee')
        self.assertEqual(category.description, 'Term tuition')
        self.assertTrue(AuditLog.objects.for_target(category).filter(action='fees.category_updated').exists())

    def test_rename_to_existing_name_is_conflict(self):
        create_fee_category(school=self.school, name='Library')
        with self.assertRaises(ConflictError):
            update_fee_category(school=self.school, category=self.tuition, changes={'name': 'Library'})

    def test_unknown_or_blank_fields_are_rejected(self):
        with self.assertRaises(LedgerValidationError):
            update_fee_category(school=self.school, category=self.tuition, changes={'school': None})
        with self.assertRaises(LedgerValidationError):
            update_fee_category(school=self.school, category=self.tuition, changes={'name': '  '})

    def test_delete_category_used_by_structure_is_conflict(self):
        with self.assertRaises(ConflictError) as ctx:
            delete_fee_category(school=self.school, category=self.tuition)
        self.assertIn('1 fee structure(s)', ctx.exception.messages[0])
        self.tuition.refresh_from_db()
        self.assertTrue(self.tuition.is_active)

    def test_delete_category_used_by_component_is_conflict(self):
        library = create_fee_category(school=self.school, name='Library')
        create_fee_structure(
            school=self.school,
            name='Annual Charges',
            academic_year=self.academic_year,
            frequency=FeeStructure.FREQUENCY_ONE_TIME,
            components=[
                {'category': self.tuition, 'amount': '1200'},
                {'category': library, 'amount': '300'},
            ],
        )
        with self.assertRaises(ConflictError):
            delete_fee_category(school=self.school, category=library)

    def test_delete_unused_category_deactivates_it(self):
        library = create_fee_category(school=self.school, name='Library')
        delete_fee_category(school=self.school, category=library, deleted_by=self.accountant)

        library.refresh_from_db()
        self.assertFalse(library.is_active)
        self.assertTrue(AuditLog.objects.filter(action='fees.category_deleted').exists())
        self.assertEqual(list(active_fee_categories(school=self.school)), [self.tuition])

    def test_list_categories(self):
        create_fee_category(school=self.school, name='Library', description='Books and reading room')
        create_fee_category(school=self.school, name='Transport')

        names = [item.name for item in list_fee_categories(school=self.school)]
        self.assertEqual(names, ['Library', 'Transport', 'Tuition'])
        self.assertEqual(
            [item.name for item in list_fee_categories(school=self.school, search='reading')],
            ['Library'],
        )
        other_school = School.objects.create(name='Other School', code='other_school')
        create_fee_category(school=other_school, name='Sports')
        self.assertEqual(list_fee_categories(school=other_school).count(), 1)


class FeeCollectionTests(FeesBaseTestCase):
    def test_new_collection_figures(self):
        collection = self.bill()
        self.assertEqual(collection.total_amount, Decimal('5000.00'))
        self.assertEqual(collection.discount_amount, Decimal('0'))
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_PENDING)

    def test_past_due_date_is_overdue(self):
        collection = self.bill(due_date=self.today - timedelta(days=1))
        self.assertEqual(collection.status, FeeCollection.STATUS_OVERDUE)

    def test_duplicate_billing_until_cancelled(self):
        original = self.bill()
        with self.assertRaises(DuplicateBillingError):
            self.bill()

        cancel_fee_collection(school=self.school, collection=original, cancelled_by=self.accountant)
        replacement = self.bill()
        self.assertNotEqual(replacement.pk, original.pk)
        self.assertEqual(replacement.status, FeeCollection.STATUS_PENDING)

    def test_structure_for_other_class_is_rejected(self):
        other_class = SchoolClass.objects.create(school=self.school, name='9th', code='IX')
        other = Student.objects.create(
            school=self.school,
            admission_number='FEE-002',
            first_name='Arjun',
            current_class=other_class,
        )
        with self.assertRaises(LedgerValidationError):
            self.bill(student=other)

    def test_cross_school_student_is_not_found(self):
        other_school = School.objects.create(name='Other School')
        outsider = Student.objects.create(school=other_school, admission_number='X-1', first_name='Kabir')
        with self.assertRaises(NotFoundError):
            self.bill(student=outsider)

    def test_adhoc_payment_updates_balance(self):
        collection = self.bill()
        result = record_fee_payment(
            school=self.school,
            collection=collection,
            amount='1000',
            payment_method=FeeReceipt.METHOD_CASH,
            collected_by=self.accountant,
        )
        self.assertEqual(result['entry'].source, FeePaymentEntry.SOURCE_ADHOC)
        self.assertCollectionState(collection, '1000.00', '4000.00', FeeCollection.STATUS_PARTIAL)

    def test_adhoc_payment_above_due_is_rejected(self):
        collection = self.bill()
        with self.assertRaises(ExceedsDueError):
            record_fee_payment(
                school=self.school,
                collection=collection,
                amount='5000.01',
                payment_method=FeeReceipt.METHOD_CASH,
                collected_by=self.accountant,
            )

    def test_status_cannot_be_set_directly(self):
        collection = self.bill()
        with self.assertRaises(LedgerValidationError):
            update_fee_collection(school=self.school, collection=collection, changes={'status': 'paid'})

    def test_update_rederives_state(self):
        collection = self.bill()
        self.pay(collection, '2000')
        collection = update_fee_collection(
            school=self.school,
            collection=collection,
            changes={'discount_amount': '3000'},
        )
        self.assertCollectionState(collection, '2000.00', '0', FeeCollection.STATUS_PAID)

    def test_cancel_twice_is_invalid_state(self):
        collection = self.bill()
        result = cancel_fee_collection(school=self.school, collection=collection, cancelled_by=self.accountant)
        self.assertIn('Cancelled: Cancelled by user', result['collection'].remarks)
        with self.assertRaises(InvalidStateError):
            cancel_fee_collection(school=self.school, collection=collection, cancelled_by=self.accountant)

    def test_delete_with_payments_is_conflict(self):
        collection = self.bill()
        self.pay(collection, '100')
        with self.assertRaises(ConflictError):
            delete_fee_collection(school=self.school, collection=collection)

    def test_delete_unpaid_collection(self):
        collection = self.bill()
        delete_fee_collection(school=self.school, collection=collection)
        self.assertFalse(FeeCollection.objects.filter(pk=collection.pk).exists())

    def test_late_fee_assessment_is_idempotent(self):
        self.structure = update_fee_structure(
            school=self.school,
            structure=self.structure,
            changes={'late_fee': {'enabled': True, 'type': FeeStructure.TYPE_FIXED, 'value': '10', 'grace_days': 5}},
        )
        collection = self.bill(due_date=self.today - timedelta(days=10))

        assess_late_fee(school=self.school, collection=collection, today=self.today)
        collection = assess_late_fee(school=self.school, collection=collection, today=self.today)

        self.assertEqual(collection.late_fee_amount, Decimal('50.00'))
        self.assertCollectionState(collection, '0', '5050.00', FeeCollection.STATUS_OVERDUE)
        self.assertEqual(AuditLog.objects.for_target(collection).for_action('fees.late_fee').count(), 1)

    def test_refresh_overdue_statuses(self):
        collection = self.bill()
        updated = refresh_overdue_statuses(school=self.school, today=collection.due_date + timedelta(days=1))
        self.assertEqual(updated, 1)
        collection.refresh_from_db()
        self.assertEqual(collection.status, FeeCollection.STATUS_OVERDUE)


class FeeCollectionConcurrencyTests(FeesBaseTestCase):
    def test_stale_version_is_retried(self):
        collection = self.bill()
        calls = []

        def mutate(current):
            calls.append(current.version)
            if len(calls) == 1:
                FeeCollection.objects.filter(pk=current.pk).update(version=F('version') + 1)
            return {'paid_amount': Decimal('100.00')}

        with self.assertLogs('apps.core.fees.services', level='WARNING'):
            updated = _mutate_collection(collection.pk, mutate)

        self.assertEqual(len(calls), 2)
        self.assertEqual(updated.paid_amount, Decimal('100.00'))
        self.assertEqual(updated.version, calls[1] + 1)
        self.assertEqual(updated.status, FeeCollection.STATUS_PARTIAL)

    @override_settings(FEE_COLLECTION_UPDATE_RETRIES=2)
    def test_retries_exhausted_raises_concurrent_update(self):
        collection = self.bill()

        def mutate(current):
            FeeCollection.objects.filter(pk=current.pk).update(version=F('version') + 1)
            return {'paid_amount': Decimal('100.00')}

        with self.assertRaises(ConcurrentUpdateError):
            _mutate_collection(collection.pk, mutate)

        collection.refresh_from_db()
        self.assertEqual(collection.paid_amount, Decimal('0'))


class FeeReceiptTests(FeesBaseTestCase):
    def test_partial_then_full_payment(self):
        collection = self.bill()
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_PENDING)

        self.pay(collection, '2000')
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_PARTIAL)

        self.pay(collection, '3000')
        self.assertCollectionState(collection, '5000.00', '0', FeeCollection.STATUS_PAID)

    def test_cancelling_receipt_reverses_payment(self):
        collection = self.bill()
        self.pay(collection, '2000')
        second = self.pay(collection, '3000')['receipt']

        result = cancel_fee_receipt(
            school=self.school,
            receipt=second,
            cancelled_by=self.accountant,
            reason='Cheque bounced',
        )

        self.assertEqual(result['receipt'].status, FeeReceipt.STATUS_CANCELLED)
        self.assertEqual(result['receipt'].cancellation_reason, 'Cheque bounced')
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_PARTIAL)
        self.assertFalse(second.is_credited)

    def test_amount_equal_to_due_settles_collection(self):
        collection = self.bill()
        self.pay(collection, '5000.00')
        self.assertCollectionState(collection, '5000.00', '0', FeeCollection.STATUS_PAID)

    def test_amount_above_due_reports_due(self):
        collection = self.bill()
        with self.assertRaises(ExceedsDueError) as ctx:
            self.pay(collection, '5000.01')
        self.assertEqual(ctx.exception.due_amount, Decimal('5000.00'))
        self.assertIn('5000.00', ctx.exception.messages[0])
        self.assertFalse(FeeReceipt.objects.exists())

    def test_cheque_requires_number(self):
        collection = self.bill()
        with self.assertRaises(LedgerValidationError):
            self.pay(collection, '100', method=FeeReceipt.METHOD_CHEQUE)

    def test_cancelled_collection_rejects_receipts(self):
        collection = self.bill()
        cancel_fee_collection(school=self.school, collection=collection, cancelled_by=self.accountant)
        with self.assertRaises(InvalidStateError):
            self.pay(collection, '100')

    def test_cancel_twice_is_already_cancelled(self):
        collection = self.bill()
        receipt = self.pay(collection, '500')['receipt']
        cancel_fee_receipt(school=self.school, receipt=receipt, cancelled_by=self.accountant)
        with self.assertRaises(AlreadyCancelledError):
            cancel_fee_receipt(school=self.school, receipt=receipt, cancelled_by=self.accountant)
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_PENDING)

    def test_receipts_are_immutable(self):
        collection = self.bill()
        receipt = self.pay(collection, '500')['receipt']

        receipt.amount = Decimal('400.00')
        with self.assertRaises(ValidationError):
            receipt.full_clean()
        with self.assertRaises(ConflictError):
            receipt.delete()

    def test_failed_credit_rolls_back_receipt(self):
        collection = self.bill()
        with mock.patch(
            'apps.core.fees.services._apply_payment',
            side_effect=ConcurrentUpdateError('Fee collection is busy.'),
        ):
            with self.assertRaises(ConcurrentUpdateError):
                self.pay(collection, '2000')

        self.assertFalse(FeeReceipt.objects.exists())
        self.assertFalse(FeePaymentEntry.objects.exists())
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_PENDING)

    @override_settings(FEE_LEDGER_ATOMIC_RECEIPTS=False)
    def test_non_atomic_credit_failure_is_reported_and_reconciled(self):
        collection = self.bill()
        with mock.patch(
            'apps.core.fees.services._apply_payment',
            side_effect=ConcurrentUpdateError('Fee collection is busy.'),
        ):
            with self.assertRaises(PartiallyAppliedError) as ctx:
                self.pay(collection, '2000')

        receipt = ctx.exception.receipt
        self.assertEqual(ctx.exception.stage, PartiallyAppliedError.STAGE_CREDIT)
        self.assertTrue(FeeReceipt.objects.filter(pk=receipt.pk, status=FeeReceipt.STATUS_ACTIVE).exists())
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_PENDING)
        self.assertEqual(find_ledger_discrepancies(school=self.school)['uncredited_receipts'], [receipt])

        self.assertEqual(reconcile_fee_receipt(receipt=receipt), 'credited')
        self.assertIsNone(reconcile_fee_receipt(receipt=receipt))
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_PARTIAL)

    @override_settings(FEE_LEDGER_ATOMIC_RECEIPTS=False)
    def test_non_atomic_reversal_failure_is_reported_and_reconciled(self):
        collection = self.bill()
        receipt = self.pay(collection, '2000')['receipt']

        with mock.patch(
            'apps.core.fees.services._reverse_payment',
            side_effect=ConcurrentUpdateError('Fee collection is busy.'),
        ):
            with self.assertRaises(PartiallyAppliedError) as ctx:
                cancel_fee_receipt(school=self.school, receipt=receipt, cancelled_by=self.accountant)

        self.assertEqual(ctx.exception.stage, PartiallyAppliedError.STAGE_REVERSAL)
        receipt.refresh_from_db()
        self.assertEqual(receipt.status, FeeReceipt.STATUS_CANCELLED)
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_PARTIAL)

        self.assertEqual(reconcile_fee_receipt(receipt=receipt), 'reversed')
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_PENDING)

    def test_keep_receipts_policy_leaves_receipts_active(self):
        collection = self.bill()
        receipt = self.pay(collection, '2000')['receipt']

        result = cancel_fee_collection(school=self.school, collection=collection, cancelled_by=self.accountant)

        self.assertEqual(result['cancelled_receipts'], [])
        receipt.refresh_from_db()
        self.assertEqual(receipt.status, FeeReceipt.STATUS_ACTIVE)
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_CANCELLED)

    @override_settings(FEE_COLLECTION_CANCELLATION_POLICY='cancel_receipts')
    def test_cancel_receipts_policy_cascades(self):
        collection = self.bill()
        receipt = self.pay(collection, '2000')['receipt']

        result = cancel_fee_collection(
            school=self.school,
            collection=collection,
            cancelled_by=self.accountant,
            reason='Student withdrew',
        )

        self.assertEqual([item.pk for item in result['cancelled_receipts']], [receipt.pk])
        receipt.refresh_from_db()
        self.assertEqual(receipt.status, FeeReceipt.STATUS_CANCELLED)
        self.assertEqual(receipt.cancellation_reason, 'Student withdrew')
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_CANCELLED)

    def assertReceiptOnCancelledCollectionIsRefused(self):
        collection = self.bill()
        receipt = self.pay(collection, '2000')['receipt']
        cancel_fee_collection(school=self.school, collection=collection, cancelled_by=self.accountant)

        with self.assertRaises(InvalidStateError):
            cancel_fee_receipt(school=self.school, receipt=receipt, cancelled_by=self.accountant)

        receipt.refresh_from_db()
        self.assertEqual(receipt.status, FeeReceipt.STATUS_ACTIVE)
        self.assertTrue(receipt.is_credited)
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_CANCELLED)

        report = find_ledger_discrepancies(school=self.school)
        self.assertEqual(report['unreversed_receipts'], [])
        self.assertEqual(report['stranded_receipts'], [])
        self.assertEqual(report['drifted_collections'], [])

    def test_receipt_on_cancelled_collection_cannot_be_cancelled(self):
        self.assertReceiptOnCancelledCollectionIsRefused()

    @override_settings(FEE_LEDGER_ATOMIC_RECEIPTS=False)
    def test_non_atomic_receipt_on_cancelled_collection_cannot_be_cancelled(self):
        self.assertReceiptOnCancelledCollectionIsRefused()

    def test_cancelled_receipt_on_cancelled_collection_is_reported_as_stranded(self):
        collection = self.bill()
        receipt = self.pay(collection, '2000')['receipt']
        cancel_fee_collection(school=self.school, collection=collection, cancelled_by=self.accountant)
        # A cancellation that raced the collection cancellation.
        FeeReceipt.objects.filter(pk=receipt.pk).update(
            status=FeeReceipt.STATUS_CANCELLED,
            cancelled_at=timezone.now(),
        )
        receipt.refresh_from_db()

        report = find_ledger_discrepancies(school=self.school)
        self.assertEqual(report['stranded_receipts'], [receipt])
        self.assertEqual(report['unreversed_receipts'], [])
        self.assertEqual(report['drifted_collections'], [])

        with self.assertRaises(InvalidStateError):
            reconcile_fee_receipt(receipt=receipt)
        self.assertTrue(receipt.is_credited)

        out = StringIO()
        call_command('reconcile_fee_ledger', stdout=out)
        self.assertIn('review manually', out.getvalue())
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_CANCELLED)

    def test_paid_amount_matches_active_entries_across_both_channels(self):
        collection = self.bill()
        adhoc = record_fee_payment(
            school=self.school,
            collection=collection,
            amount='1000',
            payment_method=FeeReceipt.METHOD_CASH,
            collected_by=self.accountant,
        )['entry']
        receipt = self.pay(collection, '2000')['receipt']
        self.assertCollectionState(collection, '3000.00', '2000.00', FeeCollection.STATUS_PARTIAL)

        cancel_fee_receipt(school=self.school, receipt=receipt, cancelled_by=self.accountant)

        self.assertCollectionState(collection, '1000.00', '4000.00', FeeCollection.STATUS_PARTIAL)
        active_entries = FeePaymentEntry.objects.filter(fee_collection=collection, is_active=True)
        self.assertEqual([entry.pk for entry in active_entries], [adhoc.pk])
        self.assertEqual(sum(entry.amount for entry in active_entries), collection.paid_amount)
        adhoc.refresh_from_db()
        self.assertTrue(adhoc.is_active)
        self.assertEqual(adhoc.amount, Decimal('1000.00'))

    def test_reversal_larger_than_paid_amount_is_refused(self):
        collection = self.bill()
        self.pay(collection, '50')
        with self.assertRaises(InvalidStateError):
            _reverse_payment(collection.pk, Decimal('100.00'))
        self.assertCollectionState(collection, '50.00', '4950.00', FeeCollection.STATUS_PARTIAL)

    def test_pdf_receipt(self):
        collection = self.bill()
        receipt = self.pay(collection, '2000', transaction_id='TXN-1')['receipt']
        self.assertTrue(generate_fee_receipt_pdf(receipt).startswith(b'%PDF'))


class ReceiptNumberTests(FeesBaseTestCase):
    def test_sequence_format(self):
        now = timezone.make_aware(datetime(2026, 10, 5, 9, 30))
        self.assertEqual(generate_receipt_number(school=self.school, now=now), 'RCP-202610-0001')

    @override_settings(FEE_RECEIPT_PREFIX='FEE')
    def test_sequence_counts_this_month(self):
        collection = self.bill()
        first = self.pay(collection, '100')['receipt']
        second = self.pay(collection, '100')['receipt']

        period = timezone.localtime().strftime('%Y%m')
        self.assertEqual(first.receipt_number, f'FEE-{period}-0001')
        self.assertEqual(second.receipt_number, f'FEE-{period}-0002')

    def test_colliding_sequence_falls_back_to_random_suffix(self):
        collection = self.bill()
        first = self.pay(collection, '1000')['receipt']

        with mock.patch(
            'apps.core.fees.services.generate_receipt_number',
            return_value=first.receipt_number,
        ):
            with self.assertLogs('apps.core.fees.services', level='WARNING'):
                second = self.pay(collection, '1000')['receipt']

        period = timezone.localtime().strftime('%Y%m')
        self.assertNotEqual(second.receipt_number, first.receipt_number)
        self.assertTrue(second.receipt_number.startswith(f'RCP-{period}-'))
        self.assertEqual(len(second.receipt_number.rsplit('-', 1)[1]), 6)
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_PARTIAL)

    @override_settings(FEE_RECEIPT_NUMBER_RETRIES=3)
    def test_exhausted_retries_raise_numbering_collision(self):
        collection = self.bill()
        first = self.pay(collection, '1000')['receipt']

        with mock.patch(
            'apps.core.fees.services.generate_receipt_number',
            return_value=first.receipt_number,
        ), mock.patch(
            'apps.core.fees.services._random_receipt_number',
            return_value=first.receipt_number,
        ):
            with self.assertRaises(NumberingCollisionError):
                self.pay(collection, '1000')

        self.assertEqual(FeeReceipt.objects.count(), 1)
        self.assertCollectionState(collection, '1000.00', '4000.00', FeeCollection.STATUS_PARTIAL)

    def test_numbers_are_scoped_per_school(self):
        other_school = School.objects.create(name='Other School')
        now = timezone.make_aware(datetime(2026, 10, 5, 9, 30))
        collection = self.bill()
        self.pay(collection, '100')
        self.assertEqual(generate_receipt_number(school=other_school, now=now), 'RCP-202610-0001')

    def test_lookup_by_number_is_case_insensitive(self):
        collection = self.bill()
        receipt = self.pay(collection, '100')['receipt']
        found = get_receipt_by_number(school=self.school, receipt_number=receipt.receipt_number.lower())
        self.assertEqual(found.pk, receipt.pk)
        with self.assertRaises(NotFoundError):
            get_receipt_by_number(school=self.school, receipt_number='RCP-000000-9999')


class FeeReportTests(FeesBaseTestCase):
    def test_collection_stats_exclude_cancelled_from_totals(self):
        first = self.bill(month='April')
        second = self.bill(month='May')
        cancelled = self.bill(month='June')
        self.pay(first, '5000')
        self.pay(second, '1000')
        cancel_fee_collection(school=self.school, collection=cancelled, cancelled_by=self.accountant)

        stats = collection_stats(school=self.school, academic_year=self.academic_year)

        self.assertEqual(stats['total_collections'], 2)
        self.assertEqual(stats['total_billed'], Decimal('10000.00'))
        self.assertEqual(stats['total_paid'], Decimal('6000.00'))
        self.assertEqual(stats['total_due'], Decimal('4000.00'))
        self.assertEqual(stats['average_paid'], Decimal('3000.00'))
        self.assertEqual(stats['status_counts'][FeeCollection.STATUS_CANCELLED], 1)
        self.assertEqual(stats['status_counts'][FeeCollection.STATUS_PAID], 1)
        self.assertEqual(stats['status_counts'][FeeCollection.STATUS_PARTIAL], 1)

    def test_receipt_stats_by_payment_method(self):
        collection = self.bill()
        self.pay(collection, '1000')
        self.pay(collection, '500', method=FeeReceipt.METHOD_ONLINE, transaction_id='UPI-1')
        cancelled = self.pay(collection, '250')['receipt']
        cancel_fee_receipt(school=self.school, receipt=cancelled, cancelled_by=self.accountant)

        stats = receipt_stats(school=self.school)

        self.assertEqual(stats['summary']['total_receipts'], 2)
        self.assertEqual(stats['summary']['total_amount'], Decimal('1500.00'))
        self.assertEqual(stats['status_counts'][FeeReceipt.STATUS_CANCELLED], 1)
        self.assertEqual(
            [row['payment_method'] for row in stats['by_payment_method']],
            [FeeReceipt.METHOD_CASH, FeeReceipt.METHOD_ONLINE],
        )
        self.assertEqual(list_receipts(school=self.school).count(), 2)

    def test_due_list_requires_academic_year(self):
        self.bill()
        with self.assertRaises(LedgerValidationError):
            list_due_collections(school=self.school, academic_year='')
        self.assertEqual(list_due_collections(school=self.school, academic_year=self.academic_year).count(), 1)

    def test_student_due_summary_buckets(self):
        annual = create_fee_structure(
            school=self.school,
            name='Annual Charges',
            academic_year=self.academic_year,
            frequency=FeeStructure.FREQUENCY_ONE_TIME,
            components=[{'category': self.tuition, 'amount': '800'}],
        )
        self.bill(month='April', due_date=self.today - timedelta(days=70))
        self.bill(month='May', due_date=self.today - timedelta(days=10))
        self.bill(month='', fee_structure=annual)

        rows = student_due_summary(school=self.school, academic_year=self.academic_year, today=self.today)

        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row['two_month_due'], Decimal('5000.00'))
        self.assertEqual(row['one_month_due'], Decimal('5000.00'))
        self.assertEqual(row['other_charges_due'], Decimal('800.00'))
        self.assertEqual(row['total_due'], Decimal('10800.00'))


class FeeLedgerCommandTests(FeesBaseTestCase):
    def test_reconcile_corrects_drifted_collection(self):
        collection = self.bill()
        self.pay(collection, '1000')
        FeeCollection.objects.filter(pk=collection.pk).update(paid_amount=Decimal('1500.00'))

        out = StringIO()
        call_command('reconcile_fee_ledger', '--school', self.school.code, stdout=out)

        self.assertIn('paid amount set to 1000.00', out.getvalue())
        self.assertCollectionState(collection, '1000.00', '4000.00', FeeCollection.STATUS_PARTIAL)
        self.assertFalse(reconcile_fee_collection(collection=collection)['changed'])

    @override_settings(FEE_LEDGER_ATOMIC_RECEIPTS=False)
    def test_dry_run_changes_nothing(self):
        collection = self.bill()
        with mock.patch(
            'apps.core.fees.services._apply_payment',
            side_effect=ConcurrentUpdateError('Fee collection is busy.'),
        ):
            with self.assertRaises(PartiallyAppliedError):
                self.pay(collection, '2000')

        out = StringIO()
        call_command('reconcile_fee_ledger', '--dry-run', stdout=out)
        self.assertIn('[DRY RUN] Would credit', out.getvalue())
        self.assertCollectionState(collection, '0', '5000.00', FeeCollection.STATUS_PENDING)

        call_command('reconcile_fee_ledger', stdout=StringIO())
        self.assertCollectionState(collection, '2000.00', '3000.00', FeeCollection.STATUS_PARTIAL)

    def test_seed_creates_ledger(self):
        out = StringIO()
        call_command('seed_fee_ledger', '--students', '2', '--seed', '7', stdout=out)

        school = School.objects.exclude(pk=self.school.pk).get()
        self.assertEqual(FeeCollection.objects.for_school(school).count(), 24)
        self.assertIn('Fee ledger seeding complete!', out.getvalue())
        self.assertEqual(find_ledger_discrepancies(school=school)['drifted_collections'], [])

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.test.client import RequestFactory

from apps.core.schools.models import School
from apps.core.users.audit import log_audit_event
from apps.core.users.models import AuditLog


class UserModelTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.school = School.objects.create(name='Alpha School')

    def test_school_user_requires_school(self):
        with self.assertRaises(ValueError):
            self.user_model.objects.create_user(
                username='orphan',
                password='pass12345',
                role='accountant',
            )

    def test_superuser_is_detached_from_school(self):
        superuser = self.user_model.objects.create_superuser('root', 'root@example.com', 'pass12345')
        self.assertEqual(superuser.role, 'superadmin')
        self.assertIsNone(superuser.school_id)


class AuditLogTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Audit School')
        self.accountant = get_user_model().objects.create_user(
            username='audit_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )

    def test_event_uses_explicit_user_and_school(self):
        entry = log_audit_event(
            action='fees.receipt_created',
            user=self.accountant,
            target=self.school,
            details='Amount=100.00',
        )
        self.assertIsNotNone(entry)
        self.assertEqual(entry.school_id, self.school.id)
        self.assertEqual(entry.user_id, self.accountant.id)
        self.assertEqual(entry.target_model, 'School')
        self.assertEqual(entry.target_id, str(self.school.pk))
        self.assertEqual(entry.target_repr, 'Audit School (audit_school)')
        self.assertEqual(entry.method, '')

    def test_event_records_request_metadata(self):
        request = RequestFactory().post('/fees/receipts/', HTTP_X_FORWARDED_FOR='10.0.0.5, 10.0.0.1')
        request.user = self.accountant
        entry = log_audit_event(action='fees.receipt_cancelled', request=request)
        self.assertEqual(entry.user_id, self.accountant.id)
        self.assertEqual(entry.method, 'POST')
        self.assertEqual(entry.path, '/fees/receipts/')
        self.assertEqual(entry.ip_address, '10.0.0.5')
        self.assertEqual(AuditLog.objects.count(), 1)

    def test_queries_by_target_and_action(self):
        other_school = School.objects.create(name='Other School')
        log_audit_event(action='fees.receipt_created', user=self.accountant, target=self.school)
        log_audit_event(action='fees.receipt_cancelled', user=self.accountant, target=self.school)
        log_audit_event(action='fees.collection_created', user=self.accountant, target=other_school)

        self.assertEqual(AuditLog.objects.for_target(self.school).count(), 2)
        self.assertEqual(AuditLog.objects.for_action('fees.receipt_').count(), 2)
        self.assertEqual(self.accountant.audit_logs.count(), 3)

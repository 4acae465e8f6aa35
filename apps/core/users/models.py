from django.contrib.auth.models import AbstractUser, UserManager as DjangoUserManager
from django.db import models

from apps.core.schools.models import School


class UserManager(DjangoUserManager):
    def create_superuser(self, username, email=None, password=None, **extra_fields):
        extra_fields['role'] = User.ROLE_SUPERADMIN
        extra_fields['school'] = None
        return super().create_superuser(username, email=email, password=password, **extra_fields)


class User(AbstractUser):
    """Acting user recorded on ledger mutations and in the audit trail."""

    ROLE_SUPERADMIN = 'superadmin'
    ROLE_SCHOOLADMIN = 'schooladmin'
    ROLE_ACCOUNTANT = 'accountant'
    ROLE_CASHIER = 'cashier'
    ROLE_AUDITOR = 'auditor'

    ROLE_CHOICES = (
        (ROLE_SUPERADMIN, 'Super Admin'),
        (ROLE_SCHOOLADMIN, 'School Admin'),
        (ROLE_ACCOUNTANT, 'Accountant'),
        (ROLE_CASHIER, 'Cashier'),
        (ROLE_AUDITOR, 'Auditor'),
    )

    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_CASHIER)
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='users',
    )

    objects = UserManager()

    class Meta:
        indexes = [
            models.Index(fields=['role'], name='user_role_idx'),
            models.Index(fields=['school', 'role'], name='user_school_role_idx'),
        ]

    def save(self, *args, **kwargs):
        if self.is_superuser:
            self.role = self.ROLE_SUPERADMIN

        if self.role == self.ROLE_SUPERADMIN:
            self.school = None
        elif not self.school_id:
            raise ValueError("Users other than super admins must belong to a school.")

        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.username} ({self.get_role_display()})"


class AuditLogQuerySet(models.QuerySet):
    def for_target(self, target):
        return self.filter(target_model=target.__class__.__name__, target_id=str(target.pk))

    def for_action(self, prefix):
        """Events whose action starts with ``prefix``, e.g. ``fees.receipt_``."""
        return self.filter(action__startswith=prefix)


class AuditLog(models.Model):
    school = models.ForeignKey(
        School,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='audit_logs',
    )
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='audit_logs',
    )

    action = models.CharField(max_length=100)
    target_model = models.CharField(max_length=100, blank=True)
    target_id = models.CharField(max_length=64, blank=True)
    target_repr = models.CharField(max_length=255, blank=True)
    details = models.TextField(blank=True)

    method = models.CharField(max_length=10, blank=True)
    path = models.CharField(max_length=255, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    objects = AuditLogQuerySet.as_manager()

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['school', '-created_at'], name='audit_school_created_idx'),
            models.Index(fields=['target_model', 'target_id'], name='audit_target_idx'),
            models.Index(fields=['action'], name='audit_action_idx'),
        ]

    def __str__(self):
        target = self.target_repr or f"{self.target_model}:{self.target_id}"
        return f"{self.action} on {target} by {self.user_id or 'system'}"

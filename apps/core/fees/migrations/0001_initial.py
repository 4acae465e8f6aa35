import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('academics', '0001_initial'),
        ('schools', '0001_initial'),
        ('students', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='FeeCategory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('school', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='fee_categories', to='schools.school')),
            ],
            options={
                'verbose_name_plural': 'fee categories',
                'ordering': ['name', 'id'],
                'indexes': [models.Index(fields=['school', 'is_active'], name='fee_category_active_idx')],
                'constraints': [models.UniqueConstraint(fields=('school', 'name'), name='unique_fee_category_name_per_school')],
            },
        ),
        migrations.CreateModel(
            name='FeeStructure',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100)),
                ('academic_year', models.CharField(max_length=20)),
                ('amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('total_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('frequency', models.CharField(choices=[('one-time', 'One Time'), ('monthly', 'Monthly'), ('quarterly', 'Quarterly'), ('term', 'Term'), ('semi-annual', 'Semi Annual'), ('annual', 'Annual')], default='monthly', max_length=20)),
                ('due_day', models.PositiveSmallIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(31)])),
                ('late_fee_enabled', models.BooleanField(default=False)),
                ('late_fee_type', models.CharField(choices=[('fixed', 'Fixed'), ('percentage', 'Percentage')], default='fixed', max_length=20)),
                ('late_fee_value', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('late_fee_grace_days', models.PositiveIntegerField(default=0)),
                ('discount_enabled', models.BooleanField(default=False)),
                ('discount_type', models.CharField(choices=[('fixed', 'Fixed'), ('percentage', 'Percentage')], default='fixed', max_length=20)),
                ('discount_value', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('discount_description', models.CharField(blank=True, max_length=255)),
                ('status', models.CharField(choices=[('active', 'Active'), ('inactive', 'Inactive')], default='active', max_length=20)),
                ('description', models.CharField(blank=True, max_length=500)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('category', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='fee_structures', to='fees.feecategory')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_fee_structures', to=settings.AUTH_USER_MODEL)),
                ('school', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='fee_structures', to='schools.school')),
                ('school_class', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='fee_structures', to='academics.schoolclass')),
            ],
            options={
                'ordering': ['academic_year', 'name', 'id'],
                'indexes': [
                    models.Index(fields=['school', 'academic_year', 'status'], name='fee_structure_year_idx'),
                    models.Index(fields=['school', 'school_class'], name='fee_structure_class_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('school_class__isnull', False)), fields=('school', 'name', 'school_class', 'academic_year'), name='unique_fee_structure_per_class_year'),
                    models.UniqueConstraint(condition=models.Q(('school_class__isnull', True)), fields=('school', 'name', 'academic_year'), name='unique_school_wide_fee_structure_per_year'),
                    models.CheckConstraint(condition=models.Q(('amount__gte', 0), ('total_amount__gte', 0)), name='fee_structure_non_negative_amounts'),
                    models.CheckConstraint(condition=models.Q(('due_day__gte', 1), ('due_day__lte', 31)), name='fee_structure_due_day_range'),
                ],
            },
        ),
        migrations.CreateModel(
            name='FeeStructureComponent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('label', models.CharField(blank=True, max_length=100)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('category', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='structure_components', to='fees.feecategory')),
                ('fee_structure', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='components', to='fees.feestructure')),
            ],
            options={
                'ordering': ['id'],
                'constraints': [models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='fee_component_amount_positive')],
            },
        ),
        migrations.CreateModel(
            name='FeeCollection',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('academic_year', models.CharField(max_length=20)),
                ('month', models.CharField(blank=True, default='', max_length=20)),
                ('total_amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('discount_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('late_fee_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('paid_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('due_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('due_date', models.DateField()),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('partial', 'Partial'), ('paid', 'Paid'), ('overdue', 'Overdue'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('remarks', models.TextField(blank=True)),
                ('version', models.PositiveIntegerField(default=0)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('cancelled_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='cancelled_fee_collections', to=settings.AUTH_USER_MODEL)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_fee_collections', to=settings.AUTH_USER_MODEL)),
                ('fee_structure', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='collections', to='fees.feestructure')),
                ('school', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='fee_collections', to='schools.school')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='fee_collections', to='students.student')),
            ],
            options={
                'ordering': ['due_date', 'id'],
                'indexes': [
                    models.Index(fields=['school', 'academic_year', 'status'], name='fee_collection_year_idx'),
                    models.Index(fields=['school', 'student'], name='fee_collection_student_idx'),
                    models.Index(fields=['school', 'due_date'], name='fee_collection_due_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status', 'cancelled'), _negated=True), fields=('school', 'student', 'fee_structure', 'academic_year', 'month'), name='unique_open_fee_collection_per_period'),
                    models.CheckConstraint(condition=models.Q(('total_amount__gte', 0), ('discount_amount__gte', 0), ('late_fee_amount__gte', 0), ('paid_amount__gte', 0), ('due_amount__gte', 0)), name='fee_collection_non_negative_amounts'),
                    models.CheckConstraint(condition=models.Q(('discount_amount__lte', models.F('total_amount'))), name='fee_collection_discount_not_above_total'),
                ],
            },
        ),
        migrations.CreateModel(
            name='FeeReceipt',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('receipt_number', models.CharField(max_length=50)),
                ('academic_year', models.CharField(max_length=20)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('payment_date', models.DateField(default=django.utils.timezone.localdate)),
                ('payment_method', models.CharField(choices=[('cash', 'Cash'), ('cheque', 'Cheque'), ('online', 'Online'), ('card', 'Card'), ('bank_transfer', 'Bank Transfer')], default='cash', max_length=20)),
                ('transaction_id', models.CharField(blank=True, max_length=120)),
                ('cheque_number', models.CharField(blank=True, max_length=50)),
                ('cheque_date', models.DateField(blank=True, null=True)),
                ('bank_name', models.CharField(blank=True, max_length=120)),
                ('remarks', models.CharField(blank=True, max_length=500)),
                ('status', models.CharField(choices=[('active', 'Active'), ('cancelled', 'Cancelled')], default='active', max_length=20)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('cancellation_reason', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('cancelled_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='cancelled_fee_receipts', to=settings.AUTH_USER_MODEL)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_fee_receipts', to=settings.AUTH_USER_MODEL)),
                ('fee_collection', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='receipts', to='fees.feecollection')),
                ('fee_structure', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='receipts', to='fees.feestructure')),
                ('school', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='fee_receipts', to='schools.school')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='fee_receipts', to='students.student')),
            ],
            options={
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['school', 'created_at'], name='fee_receipt_created_idx'),
                    models.Index(fields=['school', 'payment_date'], name='fee_receipt_paid_on_idx'),
                    models.Index(fields=['school', 'status'], name='fee_receipt_status_idx'),
                    models.Index(fields=['student', 'status'], name='fee_receipt_student_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('school', 'receipt_number'), name='unique_receipt_number_per_school'),
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='fee_receipt_amount_positive'),
                ],
            },
        ),
        migrations.CreateModel(
            name='FeePaymentEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('source', models.CharField(choices=[('adhoc', 'Ad-hoc'), ('receipt', 'Receipt')], max_length=20)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('payment_date', models.DateField(default=django.utils.timezone.localdate)),
                ('payment_method', models.CharField(choices=[('cash', 'Cash'), ('cheque', 'Cheque'), ('online', 'Online'), ('card', 'Card'), ('bank_transfer', 'Bank Transfer')], default='cash', max_length=20)),
                ('transaction_id', models.CharField(blank=True, max_length=120)),
                ('remarks', models.CharField(blank=True, max_length=500)),
                ('is_active', models.BooleanField(default=True)),
                ('reversed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('collected_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='collected_fee_entries', to=settings.AUTH_USER_MODEL)),
                ('fee_collection', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='entries', to='fees.feecollection')),
                ('receipt', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='ledger_entry', to='fees.feereceipt')),
            ],
            options={
                'verbose_name_plural': 'fee payment entries',
                'ordering': ['payment_date', 'id'],
                'indexes': [models.Index(fields=['fee_collection', 'is_active'], name='fee_entry_active_idx')],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='fee_entry_amount_positive'),
                    models.CheckConstraint(condition=models.Q(models.Q(('source', 'receipt'), ('receipt__isnull', False)), models.Q(('source', 'adhoc'), ('receipt__isnull', True)), _connector='OR'), name='fee_entry_source_matches_receipt'),
                ],
            },
        ),
    ]

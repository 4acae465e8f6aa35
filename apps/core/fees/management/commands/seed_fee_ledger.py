import random
from datetime import timedelta
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone
from faker import Faker

from apps.core.academics.models import SchoolClass
from apps.core.fees.models import FeeCategory, FeeReceipt, FeeStructure
from apps.core.fees.services import (
    create_fee_collection,
    create_fee_receipt,
    create_fee_structure,
)
from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.users.models import User

MONTHS = ['April', 'May', 'June']


class Command(BaseCommand):
    help = 'Seeds a demo school with fee structures, collections and receipts.'

    def add_arguments(self, parser):
        parser.add_argument('--students', type=int, default=10, help='Students per class')
        parser.add_argument('--academic-year', default='2026-27')
        parser.add_argument('--seed', type=int, help='Random seed for repeatable data')

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding fee ledger...')

        fake = Faker()
        if options.get('seed') is not None:
            Faker.seed(options['seed'])
            random.seed(options['seed'])
        academic_year = options['academic_year']
        today = timezone.localdate()

        school = School.objects.create(
            name=fake.company() + ' School',
            address=fake.address(),
            email=fake.email(),
            current_academic_year=academic_year,
        )
        self.stdout.write(self.style.SUCCESS(f'Successfully created school: {school.name}'))

        accountant = User.objects.create_user(
            username=f'accountant_{school.code}',
            password='password',
            role=User.ROLE_ACCOUNTANT,
            school=school,
        )
        self.stdout.write(self.style.SUCCESS(f'Successfully created accountant user: {accountant.username}'))

        categories = {}
        for name in ['Tuition', 'Transport', 'Library', 'Examination']:
            categories[name], _ = FeeCategory.objects.get_or_create(school=school, name=name)

        classes = [
            SchoolClass.objects.create(school=school, name=f'Class {index}', code=str(index), display_order=index)
            for index in range(1, 4)
        ]

        annual_charges = create_fee_structure(
            school=school,
            name='Annual Charges',
            academic_year=academic_year,
            created_by=accountant,
            frequency=FeeStructure.FREQUENCY_ONE_TIME,
            components=[
                {'category': categories['Library'], 'amount': Decimal('800.00')},
                {'category': categories['Examination'], 'amount': Decimal('1200.00')},
            ],
        )

        for school_class in classes:
            tuition = create_fee_structure(
                school=school,
                name='Monthly Tuition',
                academic_year=academic_year,
                created_by=accountant,
                school_class=school_class,
                category=categories['Tuition'],
                amount=Decimal(1500 + 250 * school_class.display_order),
                due_day=10,
                late_fee={'enabled': True, 'type': FeeStructure.TYPE_FIXED, 'value': '10', 'grace_days': 5},
                discount={'enabled': school_class.display_order == 1, 'type': FeeStructure.TYPE_PERCENTAGE, 'value': '5'},
            )

            for _ in range(options['students']):
                student = Student.objects.create(
                    school=school,
                    admission_number=str(fake.unique.random_number(digits=6, fix_len=True)),
                    first_name=fake.first_name(),
                    last_name=fake.last_name(),
                    current_class=school_class,
                )

                for offset, month in enumerate(MONTHS):
                    collection = create_fee_collection(
                        school=school,
                        student=student,
                        fee_structure=tuition,
                        academic_year=academic_year,
                        month=month,
                        due_date=today - timedelta(days=30 * (len(MONTHS) - offset)),
                        created_by=accountant,
                    )
                    paid = random.choice([Decimal('0'), collection.due_amount / 2, collection.due_amount])
                    if paid > 0:
                        create_fee_receipt(
                            school=school,
                            student=student,
                            collection=collection,
                            amount=paid,
                            payment_method=random.choice([FeeReceipt.METHOD_CASH, FeeReceipt.METHOD_ONLINE]),
                            transaction_id=fake.bothify('TXN-########'),
                            created_by=accountant,
                        )

                create_fee_collection(
                    school=school,
                    student=student,
                    fee_structure=annual_charges,
                    academic_year=academic_year,
                    due_date=today + timedelta(days=30),
                    created_by=accountant,
                )

            self.stdout.write(self.style.SUCCESS(f'Successfully billed {options["students"]} students in {school_class.name}'))

        self.stdout.write(self.style.SUCCESS('Fee ledger seeding complete!'))

from django.core.management.base import BaseCommand, CommandError

from apps.core.fees.exceptions import FeeLedgerError
from apps.core.fees.services import (
    assess_late_fees,
    find_ledger_discrepancies,
    reconcile_fee_collection,
    reconcile_fee_receipt,
    refresh_overdue_statuses,
)
from apps.core.schools.models import School


class Command(BaseCommand):
    help = 'Finish interrupted receipt credits/reversals and correct fee collection balances'

    def add_arguments(self, parser):
        parser.add_argument(
            '--school',
            help='Limit reconciliation to the school with this code',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report discrepancies without changing anything',
        )
        parser.add_argument(
            '--assess-late-fees',
            action='store_true',
            help='Also recompute late fees on overdue collections',
        )

    def handle(self, *args, **options):
        school = None
        if options.get('school'):
            school = School.objects.filter(code=options['school']).first()
            if school is None:
                raise CommandError(f"School with code '{options['school']}' does not exist.")

        report = find_ledger_discrepancies(school=school)
        self.stdout.write(
            f"Uncredited receipts: {len(report['uncredited_receipts'])}, "
            f"unreversed cancelled receipts: {len(report['unreversed_receipts'])}, "
            f"stranded on cancelled collections: {len(report['stranded_receipts'])}, "
            f"collections with drifted balance: {len(report['drifted_collections'])}"
        )

        for receipt in report['stranded_receipts']:
            self.stdout.write(self.style.WARNING(
                f"{receipt.receipt_number}: fee collection {receipt.fee_collection_id} is cancelled; review manually"
            ))

        if options.get('dry_run'):
            for receipt in report['uncredited_receipts']:
                self.stdout.write(self.style.WARNING(f"[DRY RUN] Would credit {receipt.receipt_number}"))
            for receipt in report['unreversed_receipts']:
                self.stdout.write(self.style.WARNING(f"[DRY RUN] Would reverse {receipt.receipt_number}"))
            for collection in report['drifted_collections']:
                self.stdout.write(self.style.WARNING(f"[DRY RUN] Would recompute fee collection {collection.pk}"))
            return

        errors = []
        for receipt in report['uncredited_receipts'] + report['unreversed_receipts']:
            try:
                action = reconcile_fee_receipt(receipt=receipt)
            except FeeLedgerError as exc:
                errors.append(receipt.receipt_number)
                self.stderr.write(self.style.ERROR(f"{receipt.receipt_number}: {'; '.join(exc.messages)}"))
                continue
            if action:
                self.stdout.write(self.style.SUCCESS(f"{receipt.receipt_number}: {action}"))

        # Receipt fixes above can settle a drift on their own, so look again.
        for collection in find_ledger_discrepancies(school=school)['drifted_collections']:
            try:
                result = reconcile_fee_collection(collection=collection)
            except FeeLedgerError as exc:
                errors.append(f"collection {collection.pk}")
                self.stderr.write(self.style.ERROR(f"Fee collection {collection.pk}: {'; '.join(exc.messages)}"))
                continue
            if result['changed']:
                self.stdout.write(self.style.SUCCESS(
                    f"Fee collection {collection.pk}: paid amount set to {result['collection'].paid_amount}"
                ))

        overdue = refresh_overdue_statuses(school=school)
        self.stdout.write(f"Marked {overdue} fee collection(s) overdue")

        if options.get('assess_late_fees'):
            schools = [school] if school else School.objects.filter(is_active=True)
            assessed = sum(assess_late_fees(school=item) for item in schools)
            self.stdout.write(f"Updated late fees on {assessed} fee collection(s)")

        if errors:
            raise CommandError(f"{len(errors)} item(s) could not be reconciled: {', '.join(errors)}")
        self.stdout.write(self.style.SUCCESS('Fee ledger reconciled.'))

from django.core.management.base import BaseCommand

from sales_commissions.services.commission_service import CommissionService


class Command(BaseCommand):
    help = (
        "Move pending commissions whose hold period has passed to payable. "
        "Meant to run on a schedule."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--clinic",
            type=int,
            default=None,
            help="Only release commissions of this clinic.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report how many commissions would be released without changing them.",
        )

    def handle(self, *args, **options):
        clinic_id = options.get("clinic")
        if options.get("dry_run"):
            count = CommissionService.get_matured_events(clinic_id).count()
            mode = "DRY-RUN"
        else:
            count = CommissionService.release_matured(clinic_id)
            mode = "APPLY"
        self.stdout.write(self.style.SUCCESS(f"[{mode}] released={count}"))

from django.apps import AppConfig


class SalesCommissionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "sales_commissions"
    verbose_name = "Sales Commissions"

    def ready(self):
        pass

    # =========================================================================
    # HOOK HELPER METHODS
    # =========================================================================

    @staticmethod
    def do_after_commission_recorded(event) -> None:
        """Called after a commission event is recorded for a sale."""
        pass

    @staticmethod
    def do_after_commission_reversed(event) -> None:
        """Called after a commission event is clawed back."""
        pass

    @staticmethod
    def do_after_plan_change(plan) -> None:
        """Called after a commission plan is created, edited or toggled."""
        pass

    @staticmethod
    def filter_events_list(queryset, request):
        """Filter commission events queryset before display."""
        return queryset

"""
Sales Commissions Module Configuration

This file defines the module metadata and navigation for the Sales Commissions module.
Commission plans for sales reps and affiliates: flat or percent rates, separate
initial/recurring rates, product and bundle bonuses, multi-item bonuses,
hold periods and clawback on refund.
"""
from django.utils.translation import gettext_lazy as _

# Module Identification
MODULE_ID = "sales_commissions"
MODULE_NAME = _("Sales Commissions")
MODULE_ICON = "wallet-outline"
MODULE_VERSION = "1.0.0"
MODULE_CATEGORY = "sales"

# Target Industries (business verticals this module is designed for)
MODULE_INDUSTRIES = [
    "healthcare",   # Clinics and telehealth
    "ecommerce",    # Subscription commerce
]

# Sidebar Menu Configuration
MENU = {
    "label": _("Sales Commissions"),
    "icon": "wallet-outline",
    "order": 55,
    "show": True,
}

# Internal Navigation (Tabs)
NAVIGATION = [
    {
        "id": "dashboard",
        "label": _("Overview"),
        "icon": "stats-chart-outline",
        "view": "",
    },
    {
        "id": "plans",
        "label": _("Plans"),
        "icon": "options-outline",
        "view": "plans",
    },
    {
        "id": "events",
        "label": _("Commissions"),
        "icon": "receipt-outline",
        "view": "events",
    },
    {
        "id": "settings",
        "label": _("Settings"),
        "icon": "settings-outline",
        "view": "settings",
    },
]

# Default Settings (per-clinic overrides live in CommissionsSettings)
SETTINGS = {
    "default_hold_days": 7,
    "clawback_window_days": None,
    "minimum_payout_cents": 0,
    "reject_ambiguous_rules": False,
}

# Permissions - tuple format (action_suffix, display_name)
PERMISSIONS = [
    ("view_plan", _("Can view commission plans")),
    ("add_plan", _("Can add commission plans")),
    ("change_plan", _("Can change commission plans")),
    ("delete_plan", _("Can delete commission plans")),
    ("assign_plan", _("Can assign plans to sales reps")),
    ("view_event", _("Can view commission events")),
    ("record_event", _("Can record commission events")),
    ("reverse_event", _("Can reverse commission events")),
    ("process_payout", _("Can mark commissions as paid")),
    ("view_settings", _("Can view settings")),
    ("change_settings", _("Can change settings")),
]

# Role-based permission assignments
ROLE_PERMISSIONS = {
    "admin": ["*"],  # All permissions
    "manager": [
        "view_plan",
        "add_plan",
        "change_plan",
        "assign_plan",
        "view_event",
        "record_event",
        "reverse_event",
        "process_payout",
        "view_settings",
    ],
    "sales_rep": [
        "view_plan",
        "view_event",
    ],
}

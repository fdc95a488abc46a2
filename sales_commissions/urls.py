from django.urls import path
from . import views

app_name = 'sales_commissions'

urlpatterns = [
    # Dashboard
    path('', views.dashboard, name='dashboard'),

    # Plans
    path('plans/', views.plan_list, name='plan_list'),
    path('plans/create/', views.plan_create, name='plan_create'),
    path('plans/<int:pk>/', views.plan_detail, name='plan_detail'),
    path('plans/<int:pk>/edit/', views.plan_edit, name='plan_edit'),
    path('plans/<int:pk>/toggle/', views.plan_toggle, name='plan_toggle'),
    path('plans/<int:pk>/delete/', views.plan_delete, name='plan_delete'),

    # Product rules
    path('plans/<int:pk>/rules/add/', views.rule_add, name='rule_add'),
    path('rules/<int:pk>/delete/', views.rule_delete, name='rule_delete'),

    # Assignments
    path('plans/<int:pk>/assign/', views.assignment_add, name='assignment_add'),
    path('assignments/<int:pk>/end/', views.assignment_end, name='assignment_end'),

    # Commission events
    path('events/', views.event_list, name='event_list'),
    path('events/<int:pk>/', views.event_detail, name='event_detail'),
    path('events/<int:pk>/refund/', views.event_refund, name='event_refund'),
    path('events/release/', views.release_matured, name='release_matured'),
    path('reps/<int:sales_rep_id>/payout/', views.rep_payout, name='rep_payout'),

    # Settings
    path('settings/', views.settings, name='settings'),

    # API endpoints
    path('api/resolve/', views.api_resolve, name='api_resolve'),
    path('api/sales/', views.api_record_sale, name='api_record_sale'),
    path('api/reps/<int:sales_rep_id>/summary/', views.api_rep_summary, name='api_rep_summary'),
]

from django.urls import path
from . import views

app_name = "billing"

urlpatterns = [
    path("purchase/initialize", views.initialize_purchase, name="purchase_initialize"),
    path("purchase/verify/<str:reference>", views.verify_purchase, name="purchase_verify"),
    path("purchase/orders", views.my_orders, name="purchase_orders"),
    path("purchase/track/<str:reference>", views.track_order, name="purchase_track"),
    path("purchase/lookup/phone/<str:phone>", views.lookup_by_phone, name="purchase_lookup_phone"),
    path("payments/webhook", views.paystack_webhook, name="payments_webhook"),
    path("wallet/purchase", views.wallet_purchase, name="wallet_purchase"),
    path("wallet/balance", views.wallet_balance, name="wallet_balance"),
    path("wallet/transactions", views.wallet_transactions, name="wallet_transactions"),
    path("wallet/topup", views.wallet_topup, name="wallet_topup"),
    path("wallet/topup/verify/<str:reference>", views.verify_wallet_topup, name="wallet_topup_verify"),
    path("admin/orders/<int:order_id>/retry", views.admin_retry_order, name="admin_order_retry"),
    path("admin/orders/<int:order_id>/refund", views.admin_refund_order, name="admin_order_refund"),
    path("admin/orders/<int:order_id>/delivery-status", views.admin_delivery_status, name="admin_order_delivery_status"),
    path("admin/provider/balance", views.admin_provider_balance, name="admin_provider_balance"),
]

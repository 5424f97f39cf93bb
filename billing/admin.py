from django.contrib import admin

from .models import Order, WalletLedgerEntry, WebhookEvent


class NoDeleteAdmin(admin.ModelAdmin):
    """Audit records: never deleted from the admin."""

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(NoDeleteAdmin):
    list_display = (
        "reference", "user", "network", "data_amount", "recipient_phone", "amount",
        "payment_method", "status", "payment_status", "delivery_status", "retry_count", "created_at",
    )
    list_filter = ("status", "payment_status", "delivery_status", "payment_method", "network")
    search_fields = ("reference", "gateway_reference", "recipient_phone", "buyer_email", "provider_transaction_id")
    readonly_fields = (
        "reference", "gateway_reference", "user", "buyer_email", "recipient_phone", "network", "bundle",
        "data_amount", "carrier_plan_code", "amount", "payment_method", "payment_channel", "status",
        "payment_status", "delivery_status", "retry_count", "payment_response", "provider_response",
        "provider_transaction_id", "error_message", "delivery_claimed_at", "delivered_at", "refunded_at",
        "refund_reason", "version", "created_at", "updated_at",
    )


@admin.register(WalletLedgerEntry)
class WalletLedgerEntryAdmin(NoDeleteAdmin):
    list_display = ("reference", "user", "direction", "amount", "balance_after", "category", "status", "created_at")
    list_filter = ("direction", "category", "status")
    search_fields = ("reference", "gateway_reference", "user__email")
    readonly_fields = (
        "user", "direction", "amount", "balance_before", "balance_after", "category", "reference",
        "gateway_reference", "order", "description", "status", "created_at", "updated_at",
    )

    def has_add_permission(self, request):
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(NoDeleteAdmin):
    list_display = ("id", "event_type", "reference", "status", "attempts", "created_at", "processed_at")
    list_filter = ("status", "event_type")
    search_fields = ("reference", "fingerprint")
    readonly_fields = (
        "fingerprint", "event_type", "reference", "payload", "status", "error_message", "attempts",
        "created_at", "processed_at",
    )

from django.contrib import admin
from .models import Bundle


@admin.register(Bundle)
class BundleAdmin(admin.ModelAdmin):
    list_display = ("name", "network", "data_amount", "retail_price", "cost_price", "vtu_code", "is_active")
    list_filter = ("network", "is_active")
    search_fields = ("name", "vtu_code")
    list_editable = ("is_active",)

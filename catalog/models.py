"""
Bundle catalog. Reference data read by the billing core; only staff edit it (via admin).
"""
from django.db import models


class Network(models.TextChoices):
    MTN = "MTN", "MTN"
    TELECEL = "TELECEL", "Telecel"
    AIRTELTIGO = "AIRTELTIGO", "AirtelTigo"


class Bundle(models.Model):
    """One purchasable data plan. vtu_code is the carrier plan code sent to the VTU provider."""

    network = models.CharField(max_length=16, choices=Network.choices)
    name = models.CharField(max_length=100)
    data_amount = models.CharField(max_length=20)  # e.g. "1GB", "500MB"
    data_amount_mb = models.PositiveIntegerField(default=0)
    validity = models.CharField(max_length=50, blank=True)
    cost_price = models.DecimalField(max_digits=10, decimal_places=2)
    retail_price = models.DecimalField(max_digits=10, decimal_places=2)
    vtu_code = models.CharField(max_length=64)
    is_active = models.BooleanField(default=True)
    sort_order = models.IntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["network", "sort_order", "retail_price"]
        indexes = [models.Index(fields=["network", "is_active"], name="catalog_bundle_net_active_idx")]

    def __str__(self):
        return f"{self.network} {self.data_amount} (GHS {self.retail_price})"

from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase


class CustomUserTests(TestCase):
    def test_email_is_lowercased(self):
        user = get_user_model().objects.create_user(email="  Buyer@Example.COM ", password="pass12345")
        self.assertEqual(user.email, "buyer@example.com")
        self.assertEqual(user.wallet_balance, Decimal("0.00"))

    def test_email_required(self):
        with self.assertRaises(ValueError):
            get_user_model().objects.create_user(email="", password="pass12345")

    def test_superuser_flags(self):
        admin = get_user_model().objects.create_superuser(email="ops@example.com", password="pass12345")
        self.assertTrue(admin.is_staff)
        self.assertTrue(admin.is_superuser)

from django.contrib.auth.models import AnonymousUser
from django.test import TestCase, override_settings
from rest_framework import status
from rest_framework.test import APIRequestFactory, APITestCase

from account.models import User
from account.permissions import (
    DELIVERY_MANAGE,
    HasCapability,
    Unauthorized,
    capabilities_for_user,
    resolve_capabilities,
)


class UserModelTests(TestCase):
    def test_create_user_hashes_password(self):
        user = User.objects.create_user(email="user@example.com", password="Pass123!")

        self.assertNotEqual(user.password, "Pass123!")
        self.assertTrue(user.check_password("Pass123!"))
        self.assertEqual(user.role, User.Role.CUSTOMER)

    def test_create_user_requires_email(self):
        with self.assertRaisesMessage(ValueError, "Users must have an email"):
            User.objects.create_user(email="", password="Pass123!")

    def test_superuser_is_admin_operator(self):
        admin = User.objects.create_superuser(email="root@example.com", password="Pass123!")

        self.assertEqual(admin.role, User.Role.ADMIN)
        self.assertTrue(admin.is_operator)

    def test_superuser_flag_overrides_role(self):
        user = User.objects.create_user(email="owner@example.com", password="Pass123!", is_superuser=True)

        self.assertEqual(user.effective_role, User.Role.ADMIN)


class CapabilityTests(TestCase):
    def setUp(self):
        self.factory = APIRequestFactory()
        self.staff = User.objects.create_user(email="staff@example.com", password="Pass123!", role="STAFF")
        self.customer = User.objects.create_user(email="buyer@example.com", password="Pass123!")

    def test_operator_roles_get_delivery_capability(self):
        admin = User.objects.create_user(email="admin@example.com", password="Pass123!", role="ADMIN")

        self.assertIn(DELIVERY_MANAGE, capabilities_for_user(self.staff))
        self.assertIn(DELIVERY_MANAGE, capabilities_for_user(admin))

    def test_customers_anonymous_and_inactive_users_get_nothing(self):
        self.staff.is_active = False

        self.assertEqual(capabilities_for_user(self.customer), frozenset())
        self.assertEqual(capabilities_for_user(AnonymousUser()), frozenset())
        self.assertEqual(capabilities_for_user(self.staff), frozenset())

    @override_settings(ENABLED_MODULES=[])
    def test_disabled_module_grants_nothing(self):
        self.assertEqual(capabilities_for_user(self.staff), frozenset())

    @override_settings(DISABLED_ROLES=["STAFF"])
    def test_disabled_role_grants_nothing(self):
        self.assertEqual(capabilities_for_user(self.staff), frozenset())

    def test_capabilities_are_resolved_once_per_request(self):
        request = self.factory.get("/delivery/")
        request.user = self.staff

        first = resolve_capabilities(request)
        with override_settings(ENABLED_MODULES=[]):
            second = resolve_capabilities(request)

        self.assertIs(first, second)

    def test_permission_raises_unauthorized_without_capability(self):
        request = self.factory.get("/delivery/")
        request.user = self.customer
        view = type("View", (), {"required_capability": DELIVERY_MANAGE})()

        with self.assertRaises(Unauthorized):
            HasCapability().has_permission(request, view)

        request.user = self.staff
        request._resolved_capabilities = None
        self.assertTrue(HasCapability().has_permission(request, view))


class CurrentUserViewTests(APITestCase):
    def test_me_lists_capabilities(self):
        staff = User.objects.create_user(email="ops@example.com", password="Pass123!", role="STAFF")
        self.client.force_authenticate(user=staff)

        response = self.client.get("/auth/me/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["email"], "ops@example.com")
        self.assertEqual(response.data["capabilities"], [DELIVERY_MANAGE])

    def test_login_returns_tokens(self):
        User.objects.create_user(email="ops@example.com", password="Pass123!", role="STAFF")

        response = self.client.post(
            "/auth/login/",
            {"email": "ops@example.com", "password": "Pass123!"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertIn("access", response.data)

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import RequestFactory, TestCase

from .models import UserRole
from .permissions import IsAdminUserRole, IsOperatorOrAdminRole


class RolePermissionTests(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        User = get_user_model()
        self.operator = User.objects.create_user(username="op", password="pass1234", role=UserRole.OPERATOR)
        self.admin = User.objects.create_user(username="boss", password="pass1234", role=UserRole.ADMIN)
        self.superuser = User.objects.create_superuser(username="root", password="pass1234", role=UserRole.OPERATOR)

    def _request(self, user):
        request = self.factory.get("/")
        request.user = user
        return request

    def test_operator_permission(self):
        permission = IsOperatorOrAdminRole()
        for user in (self.operator, self.admin, self.superuser):
            self.assertTrue(permission.has_permission(self._request(user), None))
        self.assertFalse(permission.has_permission(self._request(AnonymousUser()), None))

    def test_inactive_operator_is_refused(self):
        self.operator.is_active = False
        self.operator.save(update_fields=["is_active"])
        self.assertFalse(IsOperatorOrAdminRole().has_permission(self._request(self.operator), None))

    def test_admin_permission(self):
        permission = IsAdminUserRole()
        self.assertFalse(permission.has_permission(self._request(self.operator), None))
        self.assertTrue(permission.has_permission(self._request(self.admin), None))
        self.assertTrue(permission.has_permission(self._request(self.superuser), None))


class DisplayNameTests(TestCase):
    def test_display_name_prefers_full_name(self):
        user = get_user_model()(username="ravi", first_name="Ravi", last_name="Kumar")
        self.assertEqual(user.display_name, "Ravi Kumar")
        self.assertEqual(get_user_model()(username="ravi").display_name, "ravi")

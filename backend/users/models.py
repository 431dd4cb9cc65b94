from django.contrib.auth.models import AbstractUser
from django.db import models


class UserRole(models.TextChoices):
    OPERATOR = "operator", "Operator"
    ADMIN = "admin", "Admin"


class User(AbstractUser):
    role = models.CharField(
        max_length=20,
        choices=UserRole.choices,
        default=UserRole.OPERATOR,
    )
    mobile = models.CharField(max_length=15, blank=True)

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"

    @property
    def display_name(self) -> str:
        return self.get_full_name() or self.username

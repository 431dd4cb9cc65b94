from django.contrib.auth import get_user_model

from users.models import UserRole

from ..lifecycle import create_entry
from ..models import Location, ServiceSettings


def make_user(username="operator", role=UserRole.OPERATOR, **extra):
    return get_user_model().objects.create_user(username=username, password="pass1234", role=role, **extra)


def make_location(venue_name="Lodhi Road", contact_number="9811111111"):
    return Location.objects.create(venue_name=venue_name, contact_number=contact_number)


def make_entry(location, locker_number=1, total_pots=3, mobile="9876543210", actor=None, **extra):
    return create_entry(
        customer_name=extra.pop("customer_name", "Asha Verma"),
        customer_mobile=mobile,
        customer_city=extra.pop("customer_city", "Delhi"),
        location_id=location.pk,
        locker_number=locker_number,
        total_pots=total_pots,
        actor=actor,
        **extra,
    )


def set_admin_mobile(mobile="9999999999"):
    settings = ServiceSettings.get_solo()
    settings.admin_mobile = mobile
    settings.save(update_fields=["admin_mobile", "updated_at"])
    return settings

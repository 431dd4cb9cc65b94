from rest_framework.throttling import SimpleRateThrottle


class BaseUserRateThrottle(SimpleRateThrottle):
    def get_cache_key(self, request, view):
        if request.user and request.user.is_authenticated:
            ident = request.user.pk
        else:
            ident = self.get_ident(request)
        return self.cache_format % {"scope": self.scope, "ident": ident}


class OtpRateThrottle(BaseUserRateThrottle):
    scope = "otp"


class OtpEntryRateThrottle(SimpleRateThrottle):
    """Caps codes sent to one entry's customer, whichever operator asks."""

    scope = "otp_entry"

    def get_cache_key(self, request, view):
        entry_id = request.data.get("entry_id")
        if entry_id in (None, ""):
            return None
        return self.cache_format % {"scope": self.scope, "ident": f"entry-{entry_id}"}


class ReportsRateThrottle(BaseUserRateThrottle):
    scope = "reports"

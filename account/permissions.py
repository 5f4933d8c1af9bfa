from django.conf import settings
from rest_framework import exceptions, permissions

DELIVERY_MANAGE = "delivery.manage"

# module name -> capabilities it grants to operator roles
MODULE_CAPABILITIES = {
    "delivery": {DELIVERY_MANAGE},
}

_CACHE_ATTR = "_resolved_capabilities"


class Unauthorized(exceptions.NotAuthenticated):
    default_detail = "Unauthorized"


def capabilities_for_user(user) -> frozenset:
    if not user or not user.is_authenticated or not user.is_active:
        return frozenset()
    if not getattr(user, "is_operator", False):
        return frozenset()
    if user.effective_role in getattr(settings, "DISABLED_ROLES", []):
        return frozenset()

    granted = set()
    for module in getattr(settings, "ENABLED_MODULES", []):
        granted |= MODULE_CAPABILITIES.get(module, set())
    return frozenset(granted)


def resolve_capabilities(request) -> frozenset:
    """Capabilities of the request's user, computed once and cached on the request."""
    cached = getattr(request, _CACHE_ATTR, None)
    if cached is None:
        cached = capabilities_for_user(request.user)
        setattr(request, _CACHE_ATTR, cached)
    return cached


class HasCapability(permissions.BasePermission):
    """
    Grants access when the caller holds ``view.required_capability``.

    Callers without it get a 401 rather than DRF's default 403, so an operator
    API looks the same to anonymous and under-privileged clients.
    """

    def has_permission(self, request, view):
        required = getattr(view, "required_capability", None)
        if required is None:
            return True
        if required not in resolve_capabilities(request):
            raise Unauthorized()
        return True

from collections.abc import Callable, Collection
from functools import wraps
from typing import ParamSpec, TypeVar

from django.http import HttpRequest, HttpResponse, JsonResponse

MEMBERS_VIEW_MEMBER = "members.view_member"
MEMBERS_ADD_MEMBER = "members.add_member"
MEMBERS_CHANGE_MEMBER = "members.change_member"
MEMBERS_DELETE_MEMBER = "members.delete_member"

MEMBER_IMPORT_PERMISSIONS: frozenset[str] = frozenset({MEMBERS_ADD_MEMBER, MEMBERS_CHANGE_MEMBER})


P = ParamSpec("P")
R = TypeVar("R", bound=HttpResponse)


def json_permission_required(permission: str) -> Callable[[Callable[P, R]], Callable[P, HttpResponse]]:
    """Decorator for JSON endpoints that require a single Django permission.

    Answers with a JSON 403 instead of redirecting to the login page.
    Authentication itself is enforced by LoginRequiredMiddleware.
    """
    return json_permission_required_all({permission})


def json_permission_required_all(permissions: Collection[str]) -> Callable[[Callable[P, R]], Callable[P, HttpResponse]]:
    perms = tuple(permissions)
    if not perms:
        raise ValueError("permissions must not be empty")

    def decorator(view_func: Callable[P, R]) -> Callable[P, HttpResponse]:
        @wraps(view_func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> HttpResponse:
            request = args[0] if args else None
            if not isinstance(request, HttpRequest):
                return JsonResponse({"error": "Permission denied."}, status=403)

            if not request.user.has_perms(perms):
                return JsonResponse({"error": "Permission denied."}, status=403)

            return view_func(*args, **kwargs)

        return wrapper

    return decorator

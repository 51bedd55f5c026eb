from rest_framework.permissions import BasePermission

from .conf import get_audio_settings


class RegisteredUsersOnly(BasePermission):
    """
    Reject anonymous visitors when AUDIO_REGISTERED_ONLY is on.

    Checked before any file is touched.
    """
    message = 'Only registered users can play this file.'

    def has_permission(self, request, view):
        if not get_audio_settings().registered_only:
            return True
        return bool(request.user and request.user.is_authenticated)
